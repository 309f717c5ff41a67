from typing import Any

from pydantic import BaseModel, Field


class WebhookChanges(BaseModel):
    old_status: int | None = None
    new_status: int | None = None
    fields_changed: list[str] = Field(default_factory=list)


class WebhookEvent(BaseModel):
    # "property.created" or plain "created"; both are accepted
    event: str = Field(min_length=1)
    property_id: int
    timestamp: str | None = None
    data: dict[str, Any] | None = None
    changes: WebhookChanges | None = None

    @property
    def kind(self) -> str:
        return self.event.removeprefix("property.")
