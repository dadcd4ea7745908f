from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum


class RenderMode(str, Enum):
    COMPOSITE = "composite"
    OBJECT_REMOVAL = "object_removal"


class ImageRef(BaseModel):
    """A freshly signed URL plus the stable key it was signed from."""
    url: str
    storage_key: Optional[str] = None


class Placement(BaseModel):
    """Product position and size, normalized to the room image."""
    x: float
    y: float
    scale: float


class RenderInstructions(BaseModel):
    """Everything the composite provider needs besides the images."""
    mode: RenderMode = RenderMode.COMPOSITE
    style_preset: str = "neutral"
    quality: str = "standard"
    prompt: Optional[str] = None
    # Object removal only: white marks pixels to remove
    mask: Optional[ImageRef] = None
    # Placement metadata of the prepared asset, when known
    product_hints: Dict[str, Any] = Field(default_factory=dict)
