"""
Command-line interface for the exam marking pipeline.

Usage:
    python -m scanmark mark page1.jpg page2.jpg --scheme scheme.json
    python -m scanmark mark paper.pdf --output-dir marked/ --concurrency 3
"""

import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from scanmark.config import get_settings
from scanmark.exceptions import MarkingPipelineError, PageIntegrityError
from scanmark.models.page import UploadedFile
from scanmark.models.pipeline import FinalOutput, MarkingOptions, ProgressEvent
from scanmark.services.file_validator import sanitize_filename
from scanmark.services.pipeline import run_marking_pipeline


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="scanmark",
        description="Exam marking CLI - mark scanned exam pages locally"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    mark_parser = subparsers.add_parser(
        "mark",
        help="Mark one submission (PDFs or page images)"
    )
    mark_parser.add_argument(
        "files",
        nargs="+",
        help="PDF or image files making up the submission, in page order"
    )
    mark_parser.add_argument(
        "--scheme",
        "-s",
        type=str,
        default=None,
        help="JSON file with the marking scheme, keyed by question number"
    )
    mark_parser.add_argument(
        "--output-dir",
        "-o",
        type=str,
        default="marked",
        help="Directory for annotated pages and result.json (default: marked/)"
    )
    mark_parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=None,
        help="Max concurrent marking calls (default: from env or 5)"
    )
    mark_parser.add_argument(
        "--model",
        "-m",
        type=str,
        default=None,
        help="Model override (default: MODEL_NAME from env)"
    )
    mark_parser.add_argument(
        "--session-id",
        type=str,
        default=None,
        help="Session identifier echoed in the output"
    )

    return parser


def load_uploads(paths: List[str]) -> List[UploadedFile]:
    """Read files from disk as uploads, guessing their content type from the name."""
    uploads: List[UploadedFile] = []
    for raw_path in paths:
        path = Path(raw_path)
        content_type, _ = mimetypes.guess_type(path.name)
        uploads.append(UploadedFile(
            file_name=sanitize_filename(path.name),
            content=path.read_bytes(),
            content_type=content_type or "application/octet-stream",
        ))
    return uploads


def write_output(output: FinalOutput, output_dir: Path) -> List[Path]:
    """Write annotated JPEGs, SVG overlays and result.json; return the paths written."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []

    for page in output.annotated_output:
        stem = f"page_{page.page_index + 1:03d}"
        jpeg_path = output_dir / f"{stem}.jpg"
        svg_path = output_dir / f"{stem}.svg"
        jpeg_path.write_bytes(page.image_bytes)
        svg_path.write_text(page.svg, encoding="utf-8")
        written += [jpeg_path, svg_path]

    result_path = output_dir / "result.json"
    result = output.model_dump(mode="json")
    # Page images are already on disk
    for page in result["annotated_output"]:
        page.pop("image_data", None)
    result_path.write_text(json.dumps(result, indent=2), encoding="utf-8")
    written.append(result_path)

    return written


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.step_index + 1}/{len(event.steps)}] {event.label}")


async def mark_command(args: argparse.Namespace) -> int:
    """
    Execute the mark command.

    Args:
        args: Parsed command-line arguments

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Configuration error: {e}")
        print("\nMake sure you have a .env file with:")
        print("  GEMINI_API_KEY=your_api_key")
        return 1

    missing = [p for p in args.files if not Path(p).is_file()]
    if missing:
        print(f"Error: File(s) not found: {', '.join(missing)}")
        return 1

    if args.concurrency is not None:
        if args.concurrency < 1 or args.concurrency > 50:
            print("Error: --concurrency must be between 1 and 50")
            return 1
        settings = settings.model_copy(update={"marking_concurrency": args.concurrency})

    scheme: Optional[str] = None
    if args.scheme:
        scheme_path = Path(args.scheme)
        if not scheme_path.is_file():
            print(f"Error: Scheme file not found: {args.scheme}")
            return 1
        scheme = scheme_path.read_text(encoding="utf-8")

    options = MarkingOptions(model=args.model, marking_scheme=scheme, session_id=args.session_id)

    try:
        output = await run_marking_pipeline(
            load_uploads(args.files), options, _print_progress, settings=settings
        )
    except PageIntegrityError as e:
        print(f"\nError: {e}")
        print(f"Unresolved pages (upload order, 1-based): {[p + 1 for p in e.unresolved_pages]}")
        return 1
    except MarkingPipelineError as e:
        print(f"\nError: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 1

    written = write_output(output, Path(args.output_dir))

    print(f"\nMode: {output.mode}")
    for result in output.results:
        print(f"  Q{result.question_number}: {result.score.score_text}")
    print(f"Total: {output.overall_score.score_text}")
    stats = output.processing_stats
    if stats.tasks_failed:
        print(f"Warning: {stats.tasks_failed} question(s) could not be marked")
    print(f"Wrote {len(written)} file(s) to {args.output_dir}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "mark":
        return asyncio.run(mark_command(args))

    print(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
