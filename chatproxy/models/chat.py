from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    stream: bool | None = None

    @property
    def prompt_chars(self) -> int:
        return sum(len(message.content) for message in self.messages)

    def upstream_body(self, stream: bool) -> dict[str, Any]:
        body = self.model_dump(exclude_none=True)
        body["stream"] = stream
        return body


def first_choice_content(completion: dict[str, Any]) -> str | None:
    """Content of the first choice's message, or None if there is none.

    Only that one path is inspected; the rest of the payload is relayed as-is.
    """
    choices = completion.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ConnectionTestRequest(BaseModel):
    url: str | None = None
    token: str | None = None


def validation_messages(exc: ValidationError) -> list[str]:
    return validation_messages_from_errors(exc.errors())


def validation_messages_from_errors(errors: Sequence[Any]) -> list[str]:
    """Flatten pydantic errors into ``"field.path: message"`` strings."""
    messages: list[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        text = error.get("msg", "invalid value")
        messages.append(f"{location}: {text}" if location else text)
    return messages
