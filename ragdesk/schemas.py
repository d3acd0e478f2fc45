"""Request bodies accepted by the HTTP service."""
from typing import List, Optional

from pydantic import BaseModel, Field


class IngestBody(BaseModel):
    rag_id: str = ""
    path: str = ""
    chunk_size: Optional[int] = Field(default=None, ge=1, le=8192)
    chunk_overlap: Optional[int] = Field(default=None, ge=0, le=4096)
    tags: Optional[List[str]] = None


class ChatBody(BaseModel):
    rag_ids: List[str] = Field(default_factory=list)
    query: str = ""
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class CreateRagBody(BaseModel):
    id: str = ""
    tags: Optional[List[str]] = None
