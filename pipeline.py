#!/usr/bin/env python3
"""Command-line entry point for tenant knowledge bases and the council.

Usage:
  python pipeline.py ingest --org acme --input docs.jsonl          # Chunk + embed + store
  python pipeline.py ingest --org acme --input docs.json --update  # Replace existing docs

  python pipeline.py query --org acme "refund policy"              # Show retrieved chunks
  python pipeline.py ask --org acme --org-name "Acme" "What is the refund policy?"
  python pipeline.py council --org acme --org-name "Acme" "Should we extend warranties?" \\
      --strategy deliberate --rounds 2 --roles researcher,analyst,critic

  python pipeline.py delete --org acme --doc-id doc-123            # Remove one document
  python pipeline.py status --org acme                             # Namespace stats
  python pipeline.py clear --org acme                              # Wipe the namespace

Input files are a JSON array (or single object) or JSON Lines of
documents: {"id", "uri", "title", "content", "metadata"}.
Configuration comes from environment variables (see settings.py); a
.env file in the working directory is loaded first.
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

import orjson
from dotenv import load_dotenv
from pydantic import ValidationError

from council.models import default_roles, roles_from_names
from llm.client import build_llm_client
from rag.pipeline import BatchRAGPipeline, build_rag_pipeline
from rag.query_engine import QueryEngine
from schemas.document import Document
from settings import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data loading
# ---------------------------------------------------------------------------

def load_documents(path: Path) -> list[Document]:
    """Load documents from a JSON array/object or a JSON Lines file.

    Invalid records are skipped and counted.
    """
    raw = path.read_bytes()
    items: list = []
    try:
        data = orjson.loads(raw)
        items = data if isinstance(data, list) else [data]
    except orjson.JSONDecodeError:
        for line_no, line in enumerate(raw.splitlines(), 1):
            if not line.strip():
                continue
            try:
                items.append(orjson.loads(line))
            except orjson.JSONDecodeError as e:
                logger.warning("Skipping malformed line %d in %s: %s", line_no, path.name, e)

    documents: list[Document] = []
    skipped = 0
    for item in items:
        try:
            documents.append(Document.model_validate(item))
        except ValidationError as e:
            skipped += 1
            logger.debug("Skipping invalid record in %s: %s", path.name, e)

    logger.info("Loaded %d documents from %s (skipped %d invalid)", len(documents), path, skipped)
    return documents


def _pipeline(args, settings: Settings) -> BatchRAGPipeline:
    return build_rag_pipeline(settings, org_id=args.org)


def _print_rule(title: str = "") -> None:
    print("\n" + "=" * 70)
    if title:
        print(title)
        print("=" * 70)


# ---------------------------------------------------------------------------
# INGEST
# ---------------------------------------------------------------------------

async def _ingest(args, settings: Settings) -> None:
    documents = load_documents(Path(args.input))
    if not documents:
        logger.warning("No documents to ingest from %s", args.input)
        return

    pipeline = _pipeline(args, settings)
    t0 = time.perf_counter()

    if args.update:
        results = []
        for i, document in enumerate(documents, 1):
            results.append(await pipeline.update_document(document))
            logger.info("Updated %d/%d documents", i, len(documents))
    else:
        results = await pipeline.ingest_batch(
            documents,
            concurrency=args.concurrency,
            on_progress=lambda done, total: logger.info("Ingested %d/%d documents", done, total),
        )

    elapsed = time.perf_counter() - t0
    _print_rule("INGEST SUMMARY")
    for result in results:
        flag = "" if result.embedded else "  (no chunks)"
        print(f"  {result.doc_id}: {result.chunk_count} chunks, {result.total_tokens} tokens{flag}")
    print(f"\n  Documents: {len(results)}")
    print(f"  Chunks:    {sum(r.chunk_count for r in results)}")
    print(f"  Tokens:    {sum(r.total_tokens for r in results)}")
    print(f"  Elapsed:   {elapsed:.1f}s")
    print("=" * 70)


def cmd_ingest(args, settings: Settings):
    """Chunk, embed and store documents for an org."""
    asyncio.run(_ingest(args, settings))


# ---------------------------------------------------------------------------
# QUERY / ASK / COUNCIL
# ---------------------------------------------------------------------------

async def _query(args, settings: Settings) -> None:
    pipeline = _pipeline(args, settings)
    chunks = await pipeline.retrieve(args.query, top_k=args.top_k, min_score=args.min_score)

    print(f"\nQuery: \"{args.query}\"")
    print(f"Results: {len(chunks)}")
    print("-" * 50)
    for i, chunk in enumerate(chunks, 1):
        print(f"\n[{i}] Score: {chunk.score:.4f} | {chunk.doc_id}:{chunk.chunk_index}")
        print(f"    Title: {chunk.title or '?'}")
        print(f"    URI: {chunk.uri or '?'}")
        preview = chunk.content[:200].replace("\n", " ")
        print(f"    Text: {preview}...")


def cmd_query(args, settings: Settings):
    """Run a retrieval-only query against an org's namespace."""
    asyncio.run(_query(args, settings))


async def _ask(args, settings: Settings) -> None:
    engine = QueryEngine(_pipeline(args, settings), build_llm_client(settings), args.org_name)
    result = await engine.ask(args.query, top_k=args.top_k)

    _print_rule("ANSWER")
    print(result.answer)
    if result.citations:
        print("\nSources:")
        for citation in result.citations:
            print(f"  {citation.marker} {citation.title or '?'} {citation.uri}")
    print(
        f"\n  chunks={result.chunks_retrieved} tokens_in={result.tokens_in} "
        f"tokens_out={result.tokens_out} latency={result.latency_ms}ms"
    )


def cmd_ask(args, settings: Settings):
    """Answer a question with inline citations."""
    asyncio.run(_ask(args, settings))


async def _council(args, settings: Settings) -> None:
    roles = roles_from_names(args.roles.split(",")) if args.roles else default_roles()
    engine = QueryEngine(_pipeline(args, settings), build_llm_client(settings), args.org_name)
    result = await engine.run_council(
        args.query,
        roles=roles,
        strategy=args.strategy,
        rounds=args.rounds,
        top_k=args.top_k,
    )

    _print_rule(f"COUNCIL ({result.strategy})")
    for note in result.panel:
        print(f"\n--- {note.role} (round {note.round + 1}, {note.tokens_used} tokens) ---")
        print(note.notes)
    _print_rule("FINAL")
    print(result.final)
    if result.all_citations:
        print("\nSources:")
        for citation in result.all_citations:
            print(f"  {citation.marker} {citation.title or '?'} {citation.uri}")
    print(f"\n  tokens_in={result.total_tokens_in} tokens_out={result.total_tokens_out}")


def cmd_council(args, settings: Settings):
    """Run a council deliberation over retrieved context."""
    asyncio.run(_council(args, settings))


# ---------------------------------------------------------------------------
# DELETE / STATUS / CLEAR
# ---------------------------------------------------------------------------

async def _delete(args, settings: Settings) -> None:
    removed = await _pipeline(args, settings).delete_document(args.doc_id)
    print(f"Deleted {removed} vectors for document {args.doc_id}")


def cmd_delete(args, settings: Settings):
    """Remove every chunk of one document."""
    asyncio.run(_delete(args, settings))


async def _status(args, settings: Settings) -> None:
    stats = await _pipeline(args, settings).get_stats()
    _print_rule("VECTOR STORE STATUS")
    print(f"  Org:        {args.org}")
    print(f"  Namespace:  {stats['namespace']}")
    print(f"  Vectors:    {stats['vector_count']}")
    print(f"  Dimensions: {stats['dimensions']}")
    print(f"  Backend:    {settings.vector_db_provider}")
    print("=" * 70)


def cmd_status(args, settings: Settings):
    """Show vector store statistics for an org."""
    asyncio.run(_status(args, settings))


async def _clear(args, settings: Settings) -> None:
    await _pipeline(args, settings).clear()
    print(f"Cleared all vectors for org {args.org}")


def cmd_clear(args, settings: Settings):
    """Wipe an org's namespace."""
    asyncio.run(_clear(args, settings))


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tenant RAG and council pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Pipeline command")

    def org_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--org", required=True, help="Org ID (selects the vector namespace)")
        return sub

    # Ingest
    ingest_parser = org_parser("ingest", "Chunk, embed, and store documents")
    ingest_parser.add_argument("--input", required=True, help="JSON or JSON Lines document file")
    ingest_parser.add_argument(
        "--update",
        action="store_true",
        help="Delete each document's existing chunks before ingesting",
    )
    ingest_parser.add_argument(
        "--concurrency", type=int, default=5, help="Documents ingested concurrently (default: 5)"
    )

    # Query (retrieval only)
    query_parser = org_parser("query", "Test query against the vector store")
    query_parser.add_argument("query", help="Query text")
    query_parser.add_argument("--top-k", type=int, default=6, help="Number of results")
    query_parser.add_argument("--min-score", type=float, default=0.0, help="Minimum similarity")

    # Ask
    ask_parser = org_parser("ask", "Answer a question with citations")
    ask_parser.add_argument("query", help="Question")
    ask_parser.add_argument("--org-name", required=True, help="Org display name for prompts")
    ask_parser.add_argument("--top-k", type=int, default=6, help="Chunks to retrieve")

    # Council
    council_parser = org_parser("council", "Run a council deliberation")
    council_parser.add_argument("query", help="Question")
    council_parser.add_argument("--org-name", required=True, help="Org display name for prompts")
    council_parser.add_argument(
        "--strategy",
        choices=["consensus", "deliberate", "critic"],
        default="consensus",
        help="Council strategy (default: consensus)",
    )
    council_parser.add_argument("--rounds", type=int, default=2, help="Rounds for deliberate")
    council_parser.add_argument(
        "--roles", default=None, help="Comma-separated roles, e.g. researcher,analyst,critic"
    )
    council_parser.add_argument("--top-k", type=int, default=6, help="Chunks to retrieve")

    # Delete
    delete_parser = org_parser("delete", "Delete one document's chunks")
    delete_parser.add_argument("--doc-id", required=True, help="Document ID")

    org_parser("status", "Show vector store statistics")
    org_parser("clear", "Delete every vector of the org")

    return parser


COMMANDS = {
    "ingest": cmd_ingest,
    "query": cmd_query,
    "ask": cmd_ask,
    "council": cmd_council,
    "delete": cmd_delete,
    "status": cmd_status,
    "clear": cmd_clear,
}


def main(argv=None):
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        settings = Settings.from_env()
        COMMANDS[args.command](args, settings)
    except Exception as e:
        logger.exception("Pipeline error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
