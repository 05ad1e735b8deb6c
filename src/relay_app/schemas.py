from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, List[Any], Dict[str, Any], None] = None


class ChatCompletionRequest(BaseModel):
    """The subset of the OpenAI chat-completions body the relay understands."""

    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage] = Field(min_length=1)
    model: Optional[str] = None
    stream: bool = False
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def message_dicts(self) -> List[Dict[str, Any]]:
        return [message.model_dump() for message in self.messages]

    def overrides(self) -> Dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
        }


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "google"


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]
