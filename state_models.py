import logging
import time
from typing import Any, Dict, Optional

from botbuilder.schema import Activity  # type: ignore
from pydantic import BaseModel, ConfigDict, Field

from user_auth.sign_in_flow import FlowPending

# Get logger for state management
log = logging.getLogger("state")


class ActiveGuard(BaseModel):
    """
    Persisted record of a sign-in that is waiting on the user.

    Stored under ``{channelId}/{userId}``; at most one per user per channel.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    activity: Dict[str, Any] = Field(..., description="Serialized activity that triggered the sign-in, replayed on success.")
    guard: str = Field(..., description="Id of the guard awaiting completion.")
    attempts: int = Field(..., description="Magic-code submissions left.")
    expires_at: float = Field(..., alias="expiresAt", description="Unix timestamp after which the flow is abandoned.")
    flow_started: bool = Field(True, alias="flowStarted")
    e_tag: Optional[str] = Field(None, alias="eTag")

    @classmethod
    def begin(cls, activity: Activity, guard: str, flow: FlowPending) -> "ActiveGuard":
        return cls(
            activity=activity.serialize(),
            guard=guard,
            attempts=flow.attempts,
            expires_at=flow.expires_at,
        )

    def to_activity(self) -> Activity:
        return Activity().deserialize(self.activity)

    @property
    def conversation_id(self) -> Optional[str]:
        return (self.activity.get("conversation") or {}).get("id")

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_flow_state(self) -> FlowPending:
        return FlowPending(
            attempts=self.attempts,
            expires_at=self.expires_at,
            conversation_id=self.conversation_id,
        )

    def with_flow_state(self, state: FlowPending) -> "ActiveGuard":
        return self.model_copy(update={"attempts": state.attempts, "expires_at": state.expires_at})
