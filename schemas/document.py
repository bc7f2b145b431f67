"""Pydantic models for documents entering the RAG pipeline."""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Document(BaseModel):
    id: str = Field(description="Stable document ID; re-ingests must reuse it")
    uri: str = ""
    title: str = ""
    content: str = Field(default="", description="Plain text to chunk and embed")
    metadata: dict = Field(
        default_factory=dict,
        description="Extra metadata merged into every chunk's vector metadata",
    )


class IngestResult(BaseModel):
    doc_id: str
    chunk_count: int = 0
    total_tokens: int = 0
    embedded: bool = False


class ChunkOptions(BaseModel):
    """Chunker sizing options. Invalid combinations fail at construction."""

    model_config = ConfigDict(frozen=True)

    target_tokens: int = Field(default=800, gt=0)
    overlap: int = Field(default=120, ge=0)
    preserve_paragraphs: bool = True
    min_chunk_size: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkOptions":
        if self.overlap >= self.target_tokens:
            raise ValueError(
                f"overlap ({self.overlap}) must be smaller than target_tokens ({self.target_tokens})"
            )
        return self
