"""User SQLModel definition backing the user-lookup tool."""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.models.conversation import utcnow


class User(SQLModel, table=True):
    __tablename__ = "user"

    id: str = Field(primary_key=True)
    fullname: str = Field(nullable=False)
    email: str = Field(index=True, nullable=False)
    birthdate: str = Field(default="")  # ISO date, e.g. "1984-02-29"
    profile_pic_file_name: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )

    def to_info(self) -> Dict[str, Any]:
        """Public profile record as exposed to the assistant."""
        info: Dict[str, Any] = {
            "id": self.id,
            "fullname": self.fullname,
            "email": self.email,
            "birthdate": self.birthdate,
        }
        if self.profile_pic_file_name:
            info["profilePicFileName"] = self.profile_pic_file_name
        return info
