"""FastAPI dependencies for authentication and team scoping."""

import logging
from typing import Annotated, Any

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.core.exceptions import AuthenticationError
from src.db.supabase import SupabaseClient
from src.models.follow_up import TeamMember
from src.services.team_directory import TeamDirectory

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Any:
    """Extract and validate the current user from JWT token.

    Args:
        credentials: HTTP Bearer token credentials.

    Returns:
        Validated user object from Supabase.

    Raises:
        HTTPException: If authentication fails.
    """
    if credentials is None:
        logger.warning("AUTH: No credentials provided in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        client = SupabaseClient.get_client()
        response = client.auth.get_user(credentials.credentials)

        if response is None or response.user is None:
            raise AuthenticationError("Invalid authentication token")
        return response.user

    except AuthenticationError as e:
        logger.warning("AUTH: AuthenticationError - %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except Exception as e:
        logger.exception("AUTH: Unexpected error during token validation: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


CurrentUser = Annotated[Any, Depends(get_current_user)]


def get_team_directory() -> TeamDirectory:
    """Provide the team directory."""
    return TeamDirectory()


async def get_team_membership(
    current_user: CurrentUser,
    directory: Annotated[TeamDirectory, Depends(get_team_directory)],
    x_team_id: Annotated[str | None, Header()] = None,
) -> TeamMember:
    """Resolve the caller's active membership in the ``X-Team-Id`` team.

    Raises:
        HTTPException: 400 without a team header, 403 when not a member.
    """
    if not x_team_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Team-Id header is required",
        )

    membership = await directory.get_membership(x_team_id, str(current_user.id))
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not an active member of this team",
        )
    return membership


TeamMembership = Annotated[TeamMember, Depends(get_team_membership)]
