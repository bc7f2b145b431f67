from schemas.document import ChunkOptions, Document, IngestResult
