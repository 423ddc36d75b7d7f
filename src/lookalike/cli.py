"""Command-line entry point.

Usage:
    lookalike serve
    lookalike build-references --dir ./references --output references.json
    lookalike match photo.jpg --references references.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from lookalike.config import get_settings
from lookalike.errors import InvalidInput, NoFaceDetected
from lookalike.main import configure_logging
from lookalike.matching import (
    Match,
    build_reference_set,
    discover_reference_sources,
    load_references,
    match,
    save_references,
)
from lookalike.ml.embedding_service import FaceEmbeddingService
from lookalike.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def _embedding_service() -> FaceEmbeddingService:
    settings = get_settings()
    return FaceEmbeddingService.from_settings(settings, OnnxModelManager(settings))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "lookalike.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
    )
    return 0


def cmd_build_references(args: argparse.Namespace) -> int:
    """Embed every image in a directory and write the vectors as JSON."""
    sources = discover_reference_sources(args.dir)
    if not sources:
        logger.error("No images found in %s", args.dir)
        return 1

    collection = build_reference_set(sources, _embedding_service())
    if not collection:
        logger.error("No faces detected in any of the %d reference images", len(sources))
        return 1

    save_references(collection, args.output)
    logger.info("Reference vectors written: %s", ", ".join(collection.names))
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    """Match one photo against a precomputed reference file; prints a JSON result."""
    settings = get_settings()
    threshold = settings.match_threshold if args.threshold is None else args.threshold
    references_file = args.references or settings.references_file
    if not references_file:
        logger.error("No reference file given (--references or LOOKALIKE_REFERENCES_FILE)")
        return 1

    references = load_references(references_file)
    service = _embedding_service()
    try:
        embedding = service.detect_embedding(Path(args.image).read_bytes())
    except NoFaceDetected:
        print(json.dumps({"matched": False, "reason": "no_face"}))
        return 0

    result = match(embedding, references, threshold)
    if isinstance(result, Match):
        output = {"matched": True, "name": result.record.name, "distance": result.distance}
    else:
        output = {"matched": False, "reason": result.reason}
    print(json.dumps(output))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lookalike", description="Find the reference face a photo looks like")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    build = subparsers.add_parser("build-references", help="Precompute reference embeddings")
    build.add_argument("--dir", required=True, help="Directory of reference images (name = file stem)")
    build.add_argument("--output", required=True, help="JSON file to write")
    build.set_defaults(func=cmd_build_references)

    match_cmd = subparsers.add_parser("match", help="Match a photo against a reference file")
    match_cmd.add_argument("image", help="Photo to match")
    match_cmd.add_argument("--references", default=None, help="Reference JSON file")
    match_cmd.add_argument("--threshold", type=float, default=None)
    match_cmd.set_defaults(func=cmd_match)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        return int(args.func(args))
    except (InvalidInput, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
