"""User lookup service used by the assistant's profile tool."""
import logging
from typing import Any, Dict, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.user import User

logger = logging.getLogger(__name__)


async def get_user_info_by_id(session: AsyncSession, user_id: str) -> Dict[str, Any]:
    """
    Fetch a user's profile information.

    Raises:
        NotFoundError: If no user has this id
    """
    logger.info(f"Fetching user info for id: {user_id}")
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user.to_info()


async def create_user(
    session: AsyncSession,
    user_id: str,
    fullname: str,
    email: str,
    birthdate: str = "",
    profile_pic_file_name: Optional[str] = None,
) -> User:
    user = User(
        id=user_id,
        fullname=fullname,
        email=email,
        birthdate=birthdate,
        profile_pic_file_name=profile_pic_file_name,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user
