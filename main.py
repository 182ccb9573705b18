# main.py
"""CLI entry point for the Folio book generation system."""

from __future__ import annotations

import argparse
import sys

from orchestration.cli_runner import NewBookRequest, default_cleanup_days, run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a book chapter by chapter, resuming from checkpoints."
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--book-id", help="Generate or resume an existing book")
    target.add_argument("--new", metavar="TITLE", help="Create a new book and generate it")
    target.add_argument(
        "--list-checkpoints", action="store_true", help="List books with a checkpoint"
    )
    target.add_argument(
        "--cleanup-checkpoints",
        metavar="DAYS",
        type=int,
        nargs="?",
        const=default_cleanup_days(),
        help="Remove checkpoints older than DAYS (default from settings)",
    )
    parser.add_argument("--words", type=int, help="Target word count for --new")
    parser.add_argument("--chapters", type=int, help="Number of chapters for --new")
    parser.add_argument("--genre", default="", help="Genre for --new")
    parser.add_argument("--description", default="", help="Short description for --new")
    parser.add_argument(
        "--resume-only",
        action="store_true",
        help="Only continue a book that has a checkpoint",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and start Folio."""
    parser = build_parser()
    args = parser.parse_args(argv)
    new_book = None
    if args.new:
        if not args.words or not args.chapters:
            parser.error("--new requires --words and --chapters")
        if args.words < args.chapters:
            parser.error("--words must be at least --chapters")
        new_book = NewBookRequest(
            title=args.new,
            target_word_count=args.words,
            chapter_count=args.chapters,
            genre=args.genre,
            description=args.description,
        )
    return run(
        book_id=args.book_id,
        new_book=new_book,
        resume_only=args.resume_only,
        list_checkpoints=args.list_checkpoints,
        cleanup_days=args.cleanup_checkpoints,
    )


if __name__ == "__main__":
    sys.exit(main())
