from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


Role = Literal["system", "user", "assistant"]
SearchMode = Literal["auto", "always", "off"]


class Provider(str, Enum):
    OPENAI = "openai"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"
    MISTRAL = "mistral"
    DEEPSEEK = "deepseek"
    TOGETHER = "together"


class DateWindow(str, Enum):
    """Recency windows, valued as Google Custom Search ``dateRestrict`` tokens."""

    DAY = "d1"
    WEEK = "w1"
    MONTH = "m1"
    QUARTER = "m3"
    YEAR = "y1"


class ImageUrl(BaseModel):
    url: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Role
    content: Union[str, List[ContentPart]]

    model_config = ConfigDict(frozen=True)

    def has_images(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(part, ImagePart) for part in self.content)


class SearchOptions(BaseModel):
    mode: SearchMode = "auto"


class GenerationRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: List[ChatMessage]
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    search: Optional[SearchOptions] = None
    force_search: bool = False

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    @model_validator(mode="after")
    def _strip_model(self) -> "GenerationRequest":
        if not self.model.strip():
            raise ValueError("model is required")
        return self

    @property
    def search_mode(self) -> SearchMode:
        if self.force_search:
            return "always"
        if self.search is None:
            return "auto"
        return self.search.mode


class ModelDescriptor(BaseModel):
    model_key: str
    provider: Provider
    provider_model: str
    is_premium: bool = False
    per_model_cap: int = Field(gt=0)
    fallback_model: Optional[str] = None
    temperature_default: Optional[float] = None
    max_tokens_default: Optional[int] = None
    display_name: Optional[str] = None

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class SearchResult(BaseModel):
    title: str
    link: str
    snippet: str = ""
    page_content: Optional[str] = None
    date: Optional[str] = None


class StreamFragment(BaseModel):
    kind: Literal["text", "done", "error"]
    text: str = ""
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def of_text(cls, text: str) -> "StreamFragment":
        return cls(kind="text", text=text)

    @classmethod
    def done(cls) -> "StreamFragment":
        return cls(kind="done")

    @classmethod
    def failure(cls, message: str) -> "StreamFragment":
        return cls(kind="error", error=message)
