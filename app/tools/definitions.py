"""Built-in tools the assistant may call mid-run.

Each tool receives the parsed call arguments and a ToolContext carrying the
calling user and the request's database session. The user id always comes
from the turn, never from the model's arguments.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from sqlmodel.ext.asyncio.session import AsyncSession

from app.services import user_service


@dataclass
class ToolContext:
    user_id: str
    session: AsyncSession


async def get_user_info(arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """
    Get the calling user's profile.

    Tool: get_user_info
    Wraps: user_service.get_user_info_by_id(session, user_id)
    Returns: {id, fullname, email, birthdate, profilePicFileName?}
    """
    return await user_service.get_user_info_by_id(context.session, context.user_id)


async def get_current_datetime(arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """
    Get the current date and time.

    Tool: get_current_datetime
    Returns: {"datetime": ISO-8601 UTC timestamp}
    """
    return {"datetime": datetime.now(timezone.utc).isoformat()}


# Tool definitions pushed to the remote assistant
TOOLS = {
    "get_user_info": {
        "name": "get_user_info",
        "description": "Retrieves user's information including fullname, email and birthdate",
        "parameters": {
            "type": "object",
            "properties": {},
            "required": [],
        },
    },
    "get_current_datetime": {
        "name": "get_current_datetime",
        "description": "Returns user's current date and time",
        "parameters": {
            "type": "object",
            "properties": {},
            "required": [],
        },
    },
}

HANDLERS = {
    "get_user_info": get_user_info,
    "get_current_datetime": get_current_datetime,
}
