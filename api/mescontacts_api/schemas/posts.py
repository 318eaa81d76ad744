from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field

PostStatus = Literal["DRAFT", "PUBLISHED", "DISABLED", "EXPIRED"]
AdminStatusTarget = Literal["PUBLISHED", "DISABLED"]
ActorType = Literal["human", "machine", "system"]


class UserOwner(BaseModel):
    kind: Literal["user"] = "user"
    id: str = Field(min_length=1)


class OrganizationOwner(BaseModel):
    kind: Literal["organization"] = "organization"
    id: str = Field(min_length=1)


Owner = Annotated[UserOwner | OrganizationOwner, Field(discriminator="kind")]


class GeoPoint(BaseModel):
    longitude: float
    latitude: float


class PostAttributes(BaseModel):
    business_name: str = ""
    category: str = ""
    description: str | None = None
    phone: str = ""
    email: str = ""
    website: str | None = None
    address: str = ""
    city: str = ""
    province: str = ""
    postal_code: str | None = None
    geo: GeoPoint | None = None


class PostCreateRequest(PostAttributes):
    pass


class PostUpdateRequest(PostAttributes):
    pass


class AdminPostCreateRequest(PostAttributes):
    owner: Owner
    status: PostStatus = "DRAFT"
    duration_days: int | None = None


class PostOut(BaseModel):
    id: str
    owner: Owner
    business_name: str
    category: str
    description: str | None = None
    phone: str
    email: str
    website: str | None = None
    address: str
    city: str
    province: str
    postal_code: str | None = None
    geo: GeoPoint | None = None
    status: PostStatus
    published_at: datetime | None = None
    published_until: datetime | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class PostStatusPatchRequest(BaseModel):
    status: AdminStatusTarget
    duration_days: int | None = None
    reason: str | None = None


class StatusHistoryOut(BaseModel):
    id: str
    post_id: str
    previous_status: PostStatus | None = None
    new_status: PostStatus
    actor_type: ActorType
    actor_id: str | None = None
    reason: str | None = None
    created_at: datetime


class CheckoutSessionOut(BaseModel):
    session_id: str
    url: str


class ExpirationRunOut(BaseModel):
    count: int
    post_ids: list[str] = Field(default_factory=list)
