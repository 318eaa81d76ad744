from fastapi import APIRouter, Depends, HTTPException, Query, status

from mescontacts_api.api.deps import get_lifecycle
from mescontacts_api.core.config import Settings, get_settings
from mescontacts_api.core.errors import RepositoryUnavailableError
from mescontacts_api.core.security import get_machine_principal
from mescontacts_api.schemas.posts import ExpirationRunOut

router = APIRouter()


@router.post("/expire-posts", response_model=ExpirationRunOut)
async def expire_posts(
    principal=Depends(get_machine_principal),
    lifecycle=Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
    limit: int | None = Query(default=None, ge=1),
) -> ExpirationRunOut:
    try:
        principal.require_scopes({"posts:expire"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    batch_size = min(limit or settings.expire_batch_max_size, settings.expire_batch_max_size)
    try:
        expired = await lifecycle.expire(batch_size=batch_size)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ExpirationRunOut(count=len(expired), post_ids=expired)
