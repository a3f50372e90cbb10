"""Pydantic schemas for Dwolla transfer status notifications."""
from typing import Any

from pydantic import BaseModel, Field, model_validator


class TransferNotification(BaseModel):
    """
    Transfer status webhook body.

    Accepts the flat ``{topic, resource_reference}`` form as well as Dwolla's
    native HAL form, where the transfer href lives at ``_links.resource.href``.
    """

    id: str | None = Field(default=None, description="Processor event id")
    topic: str = Field(..., min_length=1, description="Event topic, e.g. transfer_completed")
    resource_reference: str = Field(..., min_length=1, description="Transfer href the event refers to")

    @model_validator(mode="before")
    @classmethod
    def extract_resource_href(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("resource_reference"):
            links = data.get("_links")
            if isinstance(links, dict):
                resource = links.get("resource")
                if isinstance(resource, dict) and resource.get("href"):
                    data = {**data, "resource_reference": resource["href"]}
        return data


class NotificationAck(BaseModel):
    """Acknowledgement returned to the notifier."""

    received: bool = True
