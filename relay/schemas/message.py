from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from relay.utils.time import isoformat_utc


class SenderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    is_bot: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "username": self.username,
            "isBot": self.is_bot,
        }


class MarkupButton(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = ""
    url: str | None = None
    callback_data: str | None = None


class MarkupRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    buttons: tuple[MarkupButton, ...] = ()


class ReplyMarkup(BaseModel):
    model_config = ConfigDict(frozen=True)

    rows: tuple[MarkupRow, ...] = ()

    @property
    def button_count(self) -> int:
        return sum(len(row.buttons) for row in self.rows)

    def to_payload(self) -> dict[str, Any]:
        return {
            "rows": [
                {
                    "buttons": [
                        {
                            "text": button.text,
                            "url": button.url,
                            "callbackData": button.callback_data,
                        }
                        for button in row.buttons
                    ]
                }
                for row in self.rows
            ]
        }


class NormalizedMessage(BaseModel):
    """Canonical form of one inbound event.

    Protocol identifiers are carried as decimal strings. ``media_ref`` and
    ``profile_photo_ref`` are opaque protocol objects kept only so later
    stages can fetch binaries; they never reach the ingestion payload.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    account_id: str
    bot_token: str | None = None
    chat_id: str
    message_id: str
    text: str = ""
    is_outgoing: bool = False
    timestamp: datetime
    sender: SenderInfo = Field(default_factory=SenderInfo)
    profile_photo_ref: Any = Field(default=None, exclude=True, repr=False)
    media_ref: Any = Field(default=None, exclude=True, repr=False)
    reply_markup: ReplyMarkup | None = None

    profile_photo_url: str | None = None
    file_unique_id: str | None = None

    @property
    def has_media(self) -> bool:
        return self.media_ref is not None

    def to_ingestion_payload(self) -> dict[str, Any]:
        return {
            "type": "message",
            "data": {
                "chatId": self.chat_id,
                "messageId": self.message_id,
                "text": self.text,
                "isOutgoing": self.is_outgoing,
                "date": isoformat_utc(self.timestamp),
                "sender": self.sender.to_payload(),
                "profilePhotoUrl": self.profile_photo_url,
                "fileUniqueId": self.file_unique_id,
                "replyMarkup": self.reply_markup.to_payload()
                if self.reply_markup
                else None,
                "botToken": self.bot_token,
            },
        }
