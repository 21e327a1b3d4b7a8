import logging
import uuid

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.core.database import get_db
from examiner.core.security import decode_access_token
from examiner.models.db import UserRole
from examiner.models.evaluation import db_call
from examiner.models.identity import CallerIdentity, RoleGrant


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> CallerIdentity:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = uuid.UUID(str(payload.get("sub")))
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except (jwt.InvalidTokenError, ValueError) as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from exc

    rows = await db_call(
        db.execute(select(UserRole.role, UserRole.institute_id).where(UserRole.user_id == user_id)),
        "load caller roles",
    )
    grants = tuple(RoleGrant(role=role, institute_id=institute_id) for role, institute_id in rows.all())
    return CallerIdentity(user_id=user_id, grants=grants)
