"""
Conversation Schema

Messages are owned by the ingestion side and read-only here.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A single chat message or transcript line"""
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    author: str
    timestamp: datetime
    text: str
    source: str = Field(default="slack", description="Origin platform (slack, zoom, upload, ...)")
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def format_line(self) -> str:
        """Context line used in prompts: ``[<iso timestamp>] <author>: <text>``"""
        return f"[{self.timestamp.isoformat()}] {self.author}: {self.text}"
