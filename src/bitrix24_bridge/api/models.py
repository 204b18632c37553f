"""Pydantic models for Bitrix24 REST data, credentials, and bot events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

# -- Credentials --


class WebhookCredential(BaseModel):
    """Inbound-webhook credential: https://{domain}/rest/{user_id}/{secret}/."""

    type: Literal["webhook"] = "webhook"
    webhook_url: str


class OAuthCredential(BaseModel):
    """OAuth 2.0 credential of a local/market application."""

    type: Literal["oauth"] = "oauth"
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None  # unix seconds, safety buffer already applied
    client_id: str | None = None
    client_secret: str | None = None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)


Credential = Annotated[WebhookCredential | OAuthCredential, Field(discriminator="type")]


class RefreshedTokens(BaseModel):
    """Token triple handed to the persistence callback after a refresh."""

    access_token: str
    refresh_token: str
    expires_at: float


# -- REST envelope --


class ApiResponse(BaseModel):
    """Envelope returned by every REST method call."""

    result: Any = None
    error: str | None = None
    error_description: str | None = None
    time: dict[str, Any] | None = None
    total: int | None = None
    next: int | None = None

    model_config = {"extra": "allow"}


class TokenResponse(BaseModel):
    """Response from the central OAuth token endpoint."""

    access_token: str
    refresh_token: str
    expires_in: int = 3600
    domain: str | None = None
    member_id: str | None = None
    scope: str | None = None
    server_endpoint: str | None = None
    client_endpoint: str | None = None
    status: str | None = None

    model_config = {"extra": "allow"}


class ProbeResult(BaseModel):
    """Outcome of a connectivity probe (user.current)."""

    ok: bool
    domain: str | None = None
    user_id: str | None = None
    error: str | None = None


# -- Disk --


class DiskFile(BaseModel):
    """A file record from disk.storage.uploadfile / disk.file.get."""

    ID: str | int
    NAME: str
    SIZE: int | str | None = None
    DOWNLOAD_URL: str | None = None
    DETAIL_URL: str | None = None
    STORAGE_ID: str | int | None = None

    model_config = {"extra": "allow"}


class MediaAttachment(BaseModel):
    """Raw file content travelling between the agent and a dialog."""

    content: bytes
    file_name: str
    mime_type: str = "application/octet-stream"


# -- Keyboard --


class KeyboardButton(BaseModel):
    TEXT: str
    LINK: str | None = None
    COMMAND: str | None = None
    COMMAND_PARAMS: str | None = None
    BG_COLOR: str | None = None
    TEXT_COLOR: str | None = None
    BLOCK: Literal["Y", "N"] | None = None


class KeyboardMarkup(BaseModel):
    buttons: list[list[KeyboardButton]]


# -- Messages --

class FileAttachment(BaseModel):
    id: str
    name: str
    size: int | None = None
    type: str | None = None


class Mention(BaseModel):
    """A [user=ID]Name[/user] span found in inbound text."""

    user_id: int
    name: str


class IncomingMessage(BaseModel):
    """A normalized inbound chat message, text already in Markdown."""

    message_id: int
    dialog_id: str
    chat_id: int | None = None
    text: str
    from_user_id: int
    from_user_name: str
    from_user_last_name: str = ""
    is_bot: bool = False
    chat_type: str | None = None
    files: list[FileAttachment] = Field(default_factory=list)
    mentions: list[Mention] = Field(default_factory=list)
    domain: str = ""
    application_token: str | None = None
    bot_id: int
    bot_code: str


class OutgoingMessage(BaseModel):
    """A reply from the agent, text in Markdown."""

    bot_id: int
    dialog_id: str
    text: str
    media: list[MediaAttachment] = Field(default_factory=list)
    keyboard: KeyboardMarkup | None = None


class WelcomeEvent(BaseModel):
    dialog_id: str
    chat_type: str | None = None
    user_id: int | None = None
    bot_id: int
    bot_code: str
    domain: str = ""


class BotDeleteEvent(BaseModel):
    bot_id: int
    bot_code: str
    domain: str = ""


# -- Raw event payloads (ONIMBOTMESSAGEADD / ONIMJOINCHAT / ONIMBOTDELETE) --


class EventBot(BaseModel):
    BOT_ID: int
    BOT_CODE: str

    model_config = {"extra": "allow"}


def _values_as_list(value: Any) -> Any:
    # Form-encoded events key list items: data[BOT][42][BOT_ID]=42, data[PARAMS][FILES][0][id]=7
    if isinstance(value, dict):
        return list(value.values())
    return value


class EventAuth(BaseModel):
    access_token: str | None = None
    domain: str = ""
    application_token: str | None = None

    model_config = {"extra": "allow"}


class EventFile(BaseModel):
    id: str
    name: str
    size: int | None = None
    type: str | None = None

    model_config = {"extra": "allow"}


class MessageEventParams(BaseModel):
    DIALOG_ID: str
    MESSAGE_ID: int
    MESSAGE: str = ""
    FILES: list[EventFile] | None = None
    FROM_USER_ID: int
    TO_USER_ID: int | None = None
    TO_CHAT_ID: int | None = None
    CHAT_TYPE: str | None = None
    LANGUAGE: str | None = None

    model_config = {"extra": "allow"}

    @field_validator("FILES", mode="before")
    @classmethod
    def files_as_list(cls, value: Any) -> Any:
        return _values_as_list(value)


class EventUser(BaseModel):
    ID: int
    NAME: str = ""
    FIRST_NAME: str = ""
    LAST_NAME: str = ""
    WORK_POSITION: str | None = None
    IS_BOT: Literal["Y", "N"] = "N"

    model_config = {"extra": "allow"}


class MessageEventData(BaseModel):
    BOT: list[EventBot] = Field(default_factory=list)
    PARAMS: MessageEventParams
    USER: EventUser

    model_config = {"extra": "allow"}

    @field_validator("BOT", mode="before")
    @classmethod
    def bots_as_list(cls, value: Any) -> Any:
        return _values_as_list(value)


class MessageEventPayload(BaseModel):
    """Body of an ONIMBOTMESSAGEADD event."""

    event: str = "ONIMBOTMESSAGEADD"
    data: MessageEventData
    ts: int | None = None
    auth: EventAuth | None = None

    model_config = {"extra": "allow"}


class WelcomeEventParams(BaseModel):
    DIALOG_ID: str
    CHAT_TYPE: str | None = None
    USER_ID: int | None = None

    model_config = {"extra": "allow"}


class WelcomeEventData(BaseModel):
    BOT: list[EventBot] = Field(default_factory=list)
    PARAMS: WelcomeEventParams

    model_config = {"extra": "allow"}

    @field_validator("BOT", mode="before")
    @classmethod
    def bots_as_list(cls, value: Any) -> Any:
        return _values_as_list(value)


class WelcomeEventPayload(BaseModel):
    """Body of an ONIMJOINCHAT event."""

    event: str = "ONIMJOINCHAT"
    data: WelcomeEventData
    auth: EventAuth | None = None

    model_config = {"extra": "allow"}


class BotDeleteEventData(BaseModel):
    BOT: list[EventBot] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("BOT", mode="before")
    @classmethod
    def bots_as_list(cls, value: Any) -> Any:
        return _values_as_list(value)


class BotDeleteEventPayload(BaseModel):
    """Body of an ONIMBOTDELETE event."""

    event: str = "ONIMBOTDELETE"
    data: BotDeleteEventData
    auth: EventAuth | None = None

    model_config = {"extra": "allow"}
