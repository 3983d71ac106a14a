from __future__ import annotations

from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

Theme = Literal["light", "dark", "blue", "green", "purple"]
Font = Literal["inter", "roboto", "playfair", "opensans"]
Template = Literal[
    "default",
    "blog",
    "product",
    "event",
    "quote",
    "minimal",
    "news",
    "tech",
    "podcast",
    "portfolio",
    "course",
]
ImageFormat = Literal["png", "svg"]

FONT_EXTENSIONS = (".ttf", ".otf", ".woff", ".woff2")


class OGParams(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"title": "Hello Edge-OG", "template": "blog", "author": "Ada", "theme": "dark"},
            ]
        },
    )

    title: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=200)
    theme: Theme | None = None
    font: Font | None = None
    font_url: str | None = Field(default=None, alias="fontUrl")
    template: Template | None = None
    template_id: str | None = Field(default=None, alias="templateId", max_length=64)
    format: ImageFormat | None = None
    emoji: str | None = Field(default=None, max_length=16)
    author: str | None = Field(default=None, max_length=200)
    price: str | None = Field(default=None, max_length=200)
    date: str | None = Field(default=None, max_length=200)
    location: str | None = Field(default=None, max_length=200)
    quote: str | None = Field(default=None, max_length=200)
    role: str | None = Field(default=None, max_length=200)
    subtitle: str | None = Field(default=None, max_length=200)
    category: str | None = Field(default=None, max_length=200)
    version: str | None = Field(default=None, max_length=200)
    status: str | None = Field(default=None, max_length=200)
    episode: str | None = Field(default=None, max_length=200)
    duration: str | None = Field(default=None, max_length=200)
    name: str | None = Field(default=None, max_length=200)
    instructor: str | None = Field(default=None, max_length=200)
    level: str | None = Field(default=None, max_length=200)

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("template", "theme", "font", "format", mode="before")
    @classmethod
    def fold_choice_case(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @field_validator("font_url")
    @classmethod
    def validate_font_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parsed = urlparse(value)
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValueError("Custom font URL must be a valid HTTPS URL")
        if not parsed.path.lower().endswith(FONT_EXTENSIONS):
            raise ValueError("Custom font URL must point to a TTF, OTF, WOFF, or WOFF2 file")
        return value

    def render_params(self) -> dict[str, Any]:
        return {
            **self.model_dump(exclude_none=True, exclude={"template_id"}),
            "template": self.template or "default",
            "theme": self.theme or "light",
            "font": self.font or "inter",
            "format": self.format or "png",
        }


class MagicLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(max_length=254)
    turnstile_token: str | None = Field(default=None, alias="turnstileToken", max_length=2048)


class MagicLinkResponse(BaseModel):
    success: bool = True
    message: str


class SessionResponse(BaseModel):
    account_id: str
    plan: str
    created: str
    last_login: str | None = None


class CreateKeyRequest(BaseModel):
    name: str = Field(description="Human-readable name for the key.")


class CreatedKeyResponse(BaseModel):
    id: str
    name: str
    prefix: str
    key: str = Field(description="Full API key. Shown exactly once.")
    created: str
    warning: str = "Store this API key securely. It will not be shown again."


class APIKeyItem(BaseModel):
    id: str
    name: str
    prefix: str
    created: str
    last_used: str | None = None
    revoked: bool


class APIKeyListResponse(BaseModel):
    keys: list[APIKeyItem]


class RevokeKeyResponse(BaseModel):
    id: str
    revoked: bool


class DashboardUsageResponse(BaseModel):
    used: int
    limit: int
    plan: str
    reset_at: str


class WebhookAck(BaseModel):
    received: bool = True


class CreateTemplateRequest(BaseModel):
    name: str
    slug: str
    source: str


class UpdateTemplateRequest(BaseModel):
    source: str
    name: str | None = None


class TemplateView(BaseModel):
    id: str
    name: str
    slug: str
    version: int
    created_at: str
    updated_at: str
    published: bool


class TemplateResponse(BaseModel):
    template: TemplateView


class TemplateListResponse(BaseModel):
    templates: list[TemplateView]
