"""Shared data models for parsers."""

from typing import Literal

from pydantic import BaseModel, Field


class PolicyDocument(BaseModel):
    """A policy file converted to text the inference passes can read."""

    content_hash: str
    text: str
    page_count: int = Field(ge=1)
    parser_used: Literal["docling", "pymupdf", "qwen2.5vl"]
    is_scanned: bool = False
