#!/usr/bin/env python3
"""
ripit CLI Interface
===================
Command-line front end for the ripit engine.

Features:
- Subreddit, user and front page listings, with search
- Title/flair/link regex filters and a Jinja2 template filter
- File count, file size and storage limits
- Ctrl+C stops cleanly and removes the half-written file
"""

import argparse
import re
import signal
import sys
from pathlib import Path
from typing import IO, List, Optional

import jinja2
import requests

from ripit_core import (
    DEFAULT_ENTRIES_LIMIT,
    DEFAULT_MEDIA_LINK_FORMAT,
    POST_ID_PREFIX,
    SORT_MODES,
    UNLIMITED,
    USER_AGENT,
    ListingDecodeError,
    RipCore,
    RunConfig,
)
from ripit_utils import OG_TYPES, compile_template, format_size


class ConfigError(Exception):
    """Invalid flag value or combination."""


def default_folder(path: str) -> str:
    """
    Folder name derived from a listing path.

    >>> default_folder("r/pics/")
    'pics'
    """
    name = path.strip("/").replace("/", ".")
    if name.startswith("r."):
        name = name[len("r."):]
    return name or "frontpage"


def normalize_after(after: str) -> str:
    if after and not after.startswith(POST_ID_PREFIX):
        return POST_ID_PREFIX + after
    return after


def _compile_regex(option: str, value: Optional[str]):
    if not value:
        return None
    try:
        return re.compile(value)
    except re.error as e:
        raise ConfigError(f"Invalid regex for --{option}: {e}") from e


def _compile_template(option: str, value: Optional[str]):
    if not value:
        return None
    try:
        return compile_template(value)
    except jinja2.TemplateSyntaxError as e:
        raise ConfigError(f"Cannot parse template for --{option}: {e}") from e


def _open_links_file(name: Optional[str]) -> Optional[IO[str]]:
    if not name:
        return None
    if name in ("-", "stdout"):
        return sys.stdout
    return open(name, "a", encoding="utf-8")


def validate_args(args):
    """Reject invalid flag values and combinations. Raises ConfigError."""
    for option in ("max_files", "max_storage", "max_size"):
        value = getattr(args, option)
        if value < 1 and value != UNLIMITED:
            raise ConfigError(f"Invalid value for option --{option.replace('_', '-')}")

    if args.entries_limit < 1:
        raise ConfigError("Invalid value for option --entries-limit")

    if args.dry_run and (args.max_size != UNLIMITED or args.max_storage != UNLIMITED):
        raise ConfigError("Can't combine size based options with dry run")

    if args.preview_res is not None and not (args.download_preview or args.prefer_preview):
        raise ConfigError("--download-preview or --prefer-preview should be used with --preview-res")

    if args.prefer_preview and args.download_preview:
        raise ConfigError("Use only one of --prefer-preview and --download-preview")

    if args.og_type and args.og_type not in OG_TYPES:
        raise ConfigError("Only supported values for --og-type are image, video and any")

    if args.sort and args.sort not in SORT_MODES:
        raise ConfigError(f"Invalid option passed to --sort: {args.sort}")

    if args.log_media_links and not args.media_link_format:
        args.media_link_format = DEFAULT_MEDIA_LINK_FORMAT

    if (args.log_post_links and args.log_media_links
            and args.log_post_links == args.log_media_links):
        raise ConfigError("Post links and media links can't be logged to the same file")


def build_config(args, status_stream: Optional[IO[str]] = None) -> RunConfig:
    """Validate parsed arguments and turn them into a RunConfig."""
    validate_args(args)

    dry_run = args.dry_run or args.print_post_data
    # dry runs are verbose unless post data is being printed
    debug = args.verbose or (dry_run and not args.print_post_data)

    # compile everything before any links file gets opened
    template_filter = _compile_template("template-filter", args.template_filter)
    media_link_format = _compile_template("media-link-format", args.media_link_format)
    patterns = {
        option: _compile_regex(option.replace("_", "-"), getattr(args, option))
        for option in ("title_contains", "flair_contains", "link_contains",
                       "title_not_contains", "flair_not_contains", "link_not_contains")
    }

    return RunConfig(
        path=args.path.strip("/"),
        folder=Path(args.folder or default_folder(args.path)),
        after=normalize_after(args.after),
        sort=args.sort,
        search=args.search,
        entries_limit=args.entries_limit,
        user_agent=args.useragent,
        template_filter=template_filter,
        min_score=args.min_score,
        download_preview=args.download_preview,
        prefer_preview=args.prefer_preview,
        preview_width=args.preview_res,
        og_type=args.og_type,
        max_files=args.max_files,
        max_storage=args.max_storage if args.max_storage == UNLIMITED else args.max_storage * 1000 * 1000,
        max_size=args.max_size if args.max_size == UNLIMITED else args.max_size * 1000,
        dry_run=dry_run,
        debug=debug,
        allow_special_chars=args.allow_special_chars,
        print_post_data=args.print_post_data,
        post_links_file=_open_links_file(args.log_post_links),
        media_links_file=_open_links_file(args.log_media_links),
        media_link_format=media_link_format,
        post_data_output=sys.stdout if args.print_post_data else None,
        status_stream=status_stream,
        log_file=Path(args.log_file) if args.log_file else None,
        **patterns,
    )


class RipCLI:
    """Command-line interface for ripit."""

    def __init__(self, status_stream: Optional[IO[str]] = None):
        self.core = None
        self.status_stream = status_stream or sys.stderr

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        if self.core:
            self.core.interrupt()

    def _install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _print(self, text: str = ""):
        print(text, file=self.status_stream)

    def _print_header(self, config: RunConfig):
        self._print("=" * 70)
        self._print(f"ripit - {config.path or 'front page'}")
        self._print("=" * 70)
        self._print(f"   Folder: {config.folder}")
        self._print(f"   Sort: {config.sort or 'default'}"
                    + (f" | Search: {config.search}" if config.search else ""))
        self._print(f"   Max files: {config.max_files if config.max_files != UNLIMITED else 'Unlimited'}")
        self._print(f"   Max size: {format_size(config.max_size) if config.max_size != UNLIMITED else 'Unlimited'}")
        self._print(f"   Max storage: {format_size(config.max_storage) if config.max_storage != UNLIMITED else 'Unlimited'}")
        self._print(f"   Dry run: {'ON' if config.dry_run else 'OFF'}")
        self._print()

    def run(self, config: RunConfig) -> int:
        """Run one rip job. Returns the process exit code."""
        if not config.print_post_data:
            self._print_header(config)

        try:
            self.core = RipCore(config)
        except OSError as e:
            self._print(f"Cannot create folder {config.folder}: {e}")
            return 1

        self._install_signal_handlers()
        try:
            reason = self.core.run()
        except ListingDecodeError as e:
            self._print(f"Cannot read listing: {e}")
            return 1
        except requests.RequestException as e:
            self._print(f"Cannot get JSON response: {e}")
            return 1
        finally:
            for handle in (config.post_links_file, config.media_links_file):
                if handle is not None and handle is not sys.stdout:
                    handle.close()

        self.core.event_log.log(f"Exit: {reason.value}")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ripit",
        description="ripit - download images and videos from Reddit listings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Newest 50 media posts of a subreddit
  ripit r/earthporn --sort new --max-files 50

  # Top posts of the week above 1000 points, up to 500MB in total
  ripit r/wallpapers --sort top-week --min-score 1000 --max-storage 500

  # Preview what would be saved
  ripit r/pics --dry-run --title-contains "(?i)sunset"

  # Follow og:image links of non-media pages
  ripit r/art --og-type image
        """
    )

    parser.add_argument("path", help="Listing path, e.g. r/pics or user/name/submitted")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--dry-run", "-d", action="store_true",
                        help="Just print urls and names, don't download")
    parser.add_argument("--allow-special-chars", action="store_true",
                        help="Allow all characters in filenames except / and \\ "
                             "and windows-special filenames like NUL")
    parser.add_argument("--print-post-data", action="store_true",
                        help="Print post data as JSON. Implies dry run without verbose")
    parser.add_argument("--after", default="", help="Get posts after the given ID")
    parser.add_argument("--useragent", default=USER_AGENT, help="User-Agent string")
    parser.add_argument("--max-storage", type=int, default=UNLIMITED,
                        help="Data usage limit in MB, -1 for no limit")
    parser.add_argument("--max-size", type=int, default=UNLIMITED,
                        help="Max size of a media file in KB, -1 for no limit")
    parser.add_argument("--max-files", type=int, default=UNLIMITED,
                        help="Max number of files to download, -1 for no limit")
    parser.add_argument("--folder", help="Target folder (default: derived from path)")
    parser.add_argument("--log-post-links", help="Append every posted link to this file ('-' for stdout)")
    parser.add_argument("--log-media-links", help="Append resolved media links to this file ('-' for stdout)")
    parser.add_argument("--media-link-format",
                        help="Jinja2 template for media link lines. Fields: final_url, posted_url, "
                             "subreddit, id, author, score, title, quoted_title")
    parser.add_argument("--template-filter",
                        help="Jinja2 template over the post data; the post is ignored when it "
                             "renders to 'false', '0', 'none' or an empty string; missing keys "
                             "render as '<no value>' and keep the post")
    parser.add_argument("--og-type", choices=OG_TYPES,
                        help="Look up og:image/og:video of pages that aren't media links")
    parser.add_argument("--sort", default="", help="Sort: " + "|".join(SORT_MODES))
    parser.add_argument("--search", default="", help="Search for the given term")
    parser.add_argument("--min-score", type=int, default=0, help="Minimum score of the post")
    parser.add_argument("--entries-limit", type=int, default=DEFAULT_ENTRIES_LIMIT,
                        help="Number of entries to fetch in one API request")
    parser.add_argument("--title-contains", help="Download if title matches regex")
    parser.add_argument("--flair-contains", help="Download if flair matches regex")
    parser.add_argument("--link-contains", help="Download if posted link matches regex")
    parser.add_argument("--title-not-contains", help="Skip if title matches regex")
    parser.add_argument("--flair-not-contains", help="Skip if flair matches regex")
    parser.add_argument("--link-not-contains", help="Skip if posted link matches regex")
    parser.add_argument("--prefer-preview", action="store_true",
                        help="Prefer the reddit preview image when there is one")
    parser.add_argument("--download-preview", action="store_true",
                        help="Download the reddit preview image instead of the posted URL")
    parser.add_argument("--preview-res", type=int,
                        help="Width of the preview to download, e.g. 640, 960, 1080")
    parser.add_argument("--log-file", help="Write a timestamped debug log to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return RipCLI().run(config)


if __name__ == "__main__":
    sys.exit(main())
