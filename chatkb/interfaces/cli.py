from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import Settings, get_settings
from ..knowledge_base import (
    ChatKBError,
    KnowledgeBaseManager,
    QueryFilters,
    RAGQuery,
    RAGResponse,
    VectorStore,
    create_manager,
)
from ..knowledge_base.models import RETRIEVAL_METHODS
from ..logging import configure_logging
from ..utils import collect_document_files, preview, read_document, read_documents

logger = logging.getLogger("chatkb")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build knowledge bases from documents and ask grounded questions."
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--kb-path",
        help="Directory used to persist knowledge bases (default: <files_root>/kb_store).",
    )
    common.add_argument(
        "--org",
        help="Organization id owning the knowledge bases (default: CHATKB_ORGANIZATION_ID).",
    )
    common.add_argument(
        "--embedding-model",
        help="Embedding model name (default: CHATKB_EMBEDDING_MODEL).",
    )
    common.add_argument(
        "--provider",
        choices=["openai", "huggingface", "hashing"],
        help="Embedding backend provider override.",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    kb_parser = subparsers.add_parser("kb", help="Manage knowledge bases")
    kb_subparsers = kb_parser.add_subparsers(dest="kb_command")
    kb_subparsers.required = True

    kb_create = kb_subparsers.add_parser("create", parents=[common], help="Create a knowledge base")
    kb_create.add_argument("name", help="Knowledge base name")
    kb_create.add_argument("--description", default="", help="Free-form description")
    kb_create.add_argument("--chunk-size", type=int, help="Maximum characters per chunk")
    kb_create.add_argument("--chunk-overlap", type=int, help="Characters shared by neighbouring chunks")
    kb_create.add_argument(
        "--retrieval-method",
        choices=RETRIEVAL_METHODS,
        default="mmr",
        help="Re-ranking applied at query time (default: mmr).",
    )

    kb_list = kb_subparsers.add_parser("list", parents=[common], help="List knowledge bases")
    kb_list.add_argument("--all", action="store_true", help="Include deactivated knowledge bases")

    kb_add = kb_subparsers.add_parser("add", parents=[common], help="Ingest PDF, Word, markdown or text files")
    kb_add.add_argument("paths", nargs="+", help="Files or directories to ingest")
    kb_add.add_argument("--kb-id", help="Target knowledge base (default: newest of the organization)")
    kb_add.add_argument("--document-id", help="Document id to use when ingesting a single file")
    kb_add.add_argument("--max-pages", type=int, help="Only read the first N pages of PDF files")

    kb_update = kb_subparsers.add_parser("update", parents=[common], help="Replace a document")
    kb_update.add_argument("document_id", help="Id of the document to replace")
    kb_update.add_argument("path", help="File holding the new content")
    kb_update.add_argument("--kb-id", help="Target knowledge base")

    kb_remove = kb_subparsers.add_parser("remove", parents=[common], help="Remove a document")
    kb_remove.add_argument("document_id", help="Id of the document to remove")
    kb_remove.add_argument("--kb-id", help="Target knowledge base")

    kb_ask = kb_subparsers.add_parser("ask", parents=[common], help="Query a knowledge base")
    kb_ask.add_argument("question", help="Question to answer from the knowledge base")
    kb_ask.add_argument("--kb-id", help="Knowledge base to query")
    kb_ask.add_argument("--top-k", type=int, help="Number of chunks to retrieve (default: 5)")
    kb_ask.add_argument("--threshold", type=float, help="Minimum similarity (default: 0.7)")
    kb_ask.add_argument("--source", action="append", help="Only use chunks from this source")
    kb_ask.add_argument("--document", action="append", help="Only use chunks from this document id")
    kb_ask.add_argument("--model", help="Chat model used to write the answer")
    kb_ask.add_argument("--json", action="store_true", help="Print the full response as JSON")
    kb_ask.add_argument("--save", help="Optional path to save the answer as markdown.")

    kb_stats = kb_subparsers.add_parser("stats", parents=[common], help="Show knowledge base statistics")
    kb_stats.add_argument("--kb-id", help="Knowledge base to inspect")

    kb_deactivate = kb_subparsers.add_parser("deactivate", parents=[common], help="Deactivate a knowledge base")
    kb_deactivate.add_argument("kb_id", help="Knowledge base to deactivate")

    return parser.parse_args(args=argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = _apply_overrides(get_settings(), args)
        configure_logging(log_dir=settings.files_root / "logs", console_level=settings.log_level)
        logger.info("Starting ChatKB CLI command: %s", args.kb_command)
        return _handle_kb_command(args, settings)
    except (ChatKBError, FileNotFoundError, ValueError) as exc:
        logger.error("Command %s failed: %s", args.kb_command, exc)
        print(f"Error: {exc}")
        return 1


def _handle_kb_command(args: argparse.Namespace, settings: Settings) -> int:
    organization_id = args.org or settings.organization_id

    if args.kb_command == "list":
        store = VectorStore(settings.kb_store_path, insert_batch_size=settings.insert_batch_size)
        knowledge_bases = store.list_knowledge_bases(organization_id, include_inactive=args.all)
        if not knowledge_bases:
            print(f"No knowledge bases found for organization {organization_id}.")
        for kb in knowledge_bases:
            state = "active" if kb.is_active else "inactive"
            print(f"{kb.id}  {kb.name}  [{state}]  model={kb.settings.embedding_model}")
        return 0

    if args.kb_command == "deactivate":
        store = VectorStore(settings.kb_store_path, insert_batch_size=settings.insert_batch_size)
        store.deactivate_knowledge_base(args.kb_id)
        print(f"Knowledge base {args.kb_id} deactivated.")
        return 0

    manager = create_manager(settings)

    if args.kb_command == "create":
        overrides = {"retrieval_method": args.retrieval_method}
        if args.chunk_size is not None:
            overrides["chunk_size"] = args.chunk_size
        if args.chunk_overlap is not None:
            overrides["chunk_overlap"] = args.chunk_overlap
        kb_id = manager.create_knowledge_base(organization_id, args.name, args.description, overrides)
        print(f"Knowledge base created: {kb_id}")
        return 0

    knowledge_base = manager.resolve_knowledge_base(organization_id, args.kb_id)

    if args.kb_command == "add":
        return _add_documents(manager, knowledge_base.id, args.paths, args.document_id, args.max_pages)

    if args.kb_command == "update":
        document = read_document(args.path, document_id=args.document_id)
        record = manager.update_document(
            knowledge_base.id,
            document.id,
            document.content,
            document.metadata,
        )
        print(f"Document {record.document_id} updated: {record.chunks_stored} chunks")
        return 0

    if args.kb_command == "remove":
        removed = manager.remove_document(knowledge_base.id, args.document_id)
        print(f"Removed {removed} chunks of document {args.document_id}")
        return 0

    if args.kb_command == "ask":
        response = manager.query(knowledge_base.id, _build_query(args, settings), args.model)
        if args.json:
            print(json.dumps(response.to_dict(), ensure_ascii=False, indent=2))
        else:
            print(_format_response(response))
        if args.save:
            _save_answer_markdown(args.save, args.question, response)
        return 0

    if args.kb_command == "stats":
        stats = manager.get_knowledge_base_stats(knowledge_base.id)
        print(f"Knowledge base: {knowledge_base.name} ({knowledge_base.id})")
        print(f"Embedding model: {knowledge_base.settings.embedding_model}")
        print(f"Chunk size / overlap: {knowledge_base.settings.chunk_size} / {knowledge_base.settings.chunk_overlap}")
        print(f"Retrieval method: {knowledge_base.settings.retrieval_method}")
        print(f"Documents: {stats.total_documents}")
        print(f"Chunks: {stats.total_chunks}")
        print(f"Average chunk size: {round(stats.average_chunk_size)}")
        print(f"Last updated: {stats.last_updated.isoformat()}")
        return 0

    raise ValueError(f"Unknown knowledge base command: {args.kb_command}")


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    changes = {}
    if getattr(args, "kb_path", None):
        changes["kb_path"] = Path(args.kb_path).expanduser()
    if getattr(args, "embedding_model", None):
        changes["embedding_model"] = args.embedding_model
    if getattr(args, "provider", None):
        changes["embedding_provider"] = args.provider
    return dataclasses.replace(settings, **changes) if changes else settings


def _add_documents(
    manager: KnowledgeBaseManager,
    kb_id: str,
    paths: List[str],
    document_id: Optional[str],
    max_pages: Optional[int] = None,
) -> int:
    files = collect_document_files(paths)
    if not files:
        raise FileNotFoundError("No PDF, Word, markdown or text files found to ingest")
    if document_id and len(files) > 1:
        raise ValueError("--document-id can only be used with a single file")

    if document_id:
        documents, failures = [read_document(files[0], document_id=document_id, max_pages=max_pages)], []
    else:
        documents, failures = read_documents(files, max_pages=max_pages)
    for path, reason in failures:
        print(f"Skipped {path}: {reason}")

    records = manager.add_documents(kb_id, documents)
    for record in records:
        print(f"{record.document_id}: {record.status.value} ({record.chunks_stored} chunks)")
    print(f"Documents processed: {len(records)}")
    return 1 if failures and not records else 0


def _build_query(args: argparse.Namespace, settings: Settings) -> RAGQuery:
    filters = None
    if args.source or args.document:
        filters = QueryFilters(document_ids=args.document, sources=args.source)
    return RAGQuery(
        query=args.question,
        top_k=args.top_k if args.top_k is not None else settings.top_k,
        threshold=args.threshold if args.threshold is not None else settings.threshold,
        filters=filters,
    )


def _format_response(response: RAGResponse) -> str:
    lines = [response.answer, ""]
    lines.append(f"Confidence: {response.confidence:.0f}%  ({response.processing_time:.0f} ms, {response.tokens_used} tokens)")
    if response.sources:
        lines.append("Sources:")
        for idx, result in enumerate(response.sources, start=1):
            chunk = result.chunk
            lines.append(
                f"[{idx}] {chunk.source} #{chunk.chunk_index + 1} "
                f"score={result.score:.2f} ({result.relevance}): {preview(chunk.content)}"
            )
    return "\n".join(lines)


def _save_answer_markdown(destination: str, question: str, response: RAGResponse) -> None:
    output_path = Path(destination).expanduser()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    block = (
        f"## Question\n\n{question}\n\n### Answer\n\n{response.answer.strip()}\n\n"
        f"_Confidence {response.confidence:.0f}% · {datetime.now().isoformat(timespec='seconds')}_\n"
    )
    if output_path.exists():
        with output_path.open("a", encoding="utf-8") as fh:
            if output_path.stat().st_size > 0:
                fh.write("\n---\n\n")
            fh.write(block)
    else:
        header = "# Knowledge base answers\n\n"
        output_path.write_text(header + block, encoding="utf-8")
    logger.info("Answer saved to %s", output_path)


__all__ = ["main", "parse_args"]
