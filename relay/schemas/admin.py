from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_id(value: object) -> object:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


class _AdminPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReloadPayload(_AdminPayload):
    action: str | None = None
    bot_id: str | None = Field(default=None, alias="botId")

    @field_validator("bot_id", mode="before")
    @classmethod
    def _coerce_bot_id(cls, value: object) -> object:
        return _as_id(value)


class SendPayload(_AdminPayload):
    chat_id: str = Field(alias="chatId", min_length=1)
    text: str = Field(min_length=1)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _coerce_chat_id(cls, value: object) -> object:
        return _as_id(value)


class EditPayload(_AdminPayload):
    chat_id: str = Field(alias="chatId", min_length=1)
    message_id: str = Field(alias="messageId", pattern=r"^\d+$")
    text: str = Field(min_length=1)

    @field_validator("chat_id", "message_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: object) -> object:
        return _as_id(value)


class DeletePayload(_AdminPayload):
    chat_id: str | None = Field(default=None, alias="chatId")
    message_id: str = Field(alias="messageId", pattern=r"^\d+$")

    @field_validator("chat_id", "message_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: object) -> object:
        return _as_id(value)


class DeleteManyPayload(_AdminPayload):
    chat_id: str | None = Field(default=None, alias="chatId")
    message_ids: list[str] = Field(alias="messageIds", min_length=1)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _coerce_chat_id(cls, value: object) -> object:
        return _as_id(value)

    @field_validator("message_ids", mode="before")
    @classmethod
    def _coerce_message_ids(cls, value: object) -> object:
        if isinstance(value, list):
            return [_as_id(item) for item in value]
        return value

    @field_validator("message_ids")
    @classmethod
    def _require_numeric(cls, value: list[str]) -> list[str]:
        if not all(item.isdigit() for item in value):
            raise ValueError("messageIds must be numeric")
        return value
