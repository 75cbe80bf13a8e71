import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional

from .api_client import MangaDexClient
from .colors import Colors
from .config import Config
from .downloader import ChapterDownloader
from .errors import MangaDexError


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="mangadex-async", description="Search MangaDex and download chapters")
    sub = ap.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Search manga by title")
    search.add_argument("title")
    search.add_argument("--limit", type=int, default=10)

    feed = sub.add_parser("feed", help="List chapters of a manga")
    feed.add_argument("manga_id")
    feed.add_argument("--lang", default=None, help="Translated language code (default: MANGADEX_LANGUAGE or en)")
    feed.add_argument("--limit", type=int, default=100)

    dl = sub.add_parser("download", help="Download chapters as .cbz")
    dl.add_argument("chapter_ids", nargs="+")
    dl.add_argument("-o", "--output", help="Output directory (default: downloads)")
    dl.add_argument("--data-saver", action="store_true", help="Use compressed images")
    dl.add_argument("--port443", action="store_true", help="Only use @Home nodes on port 443")
    dl.add_argument("--workers", type=int, default=None, help="Parallel image downloads")
    return ap


async def run(args: argparse.Namespace, cfg: Config) -> int:
    async with MangaDexClient(cfg) as api:
        username = os.environ.get("MANGADEX_USERNAME")
        password = os.environ.get("MANGADEX_PASSWORD")
        if username and password:
            await api.login(username, password)
            print(Colors.info(f"Logged in as {username}"))

        if args.command == "search":
            page = await api.list_manga(args.title, limit=args.limit)
            for manga in page.results:
                year = f" ({manga.year})" if manga.year else ""
                print(f"{Colors.title(manga.display_title)}{year}  {Colors.muted(manga.id)}")
            print(Colors.info(f"{len(page.results)} of {page.total} results"))
        elif args.command == "feed":
            page = await api.manga_feed(args.manga_id, translated_language=[cfg.language],
                                        limit=args.limit, order={"chapter": "asc"})
            for chapter in page.results:
                print(f"{Colors.chapter(ChapterDownloader.chapter_label(chapter))}  {Colors.muted(chapter.id)}")
        else:
            downloader = ChapterDownloader(cfg)
            produced = await downloader.download_chapters(api, args.chapter_ids)
            if not produced:
                return 1
    return 0


def config_from_args(args: argparse.Namespace,
                     environ: Optional[Mapping[str, str]] = None) -> Config:
    """Environment config with command line flags layered on top."""
    cfg = Config.from_env(environ)
    if getattr(args, "lang", None):
        cfg.language = args.lang
    if getattr(args, "output", None):
        cfg.output_dir = Path(args.output)
    if getattr(args, "data_saver", False):
        cfg.data_saver = True
    if getattr(args, "port443", False):
        cfg.force_port443 = True
    if getattr(args, "workers", None):
        cfg.max_concurrent_images = max(1, args.workers)
    return cfg


def main(argv: Optional[List[str]] = None) -> int:  # pragma: no cover
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)

    try:
        return asyncio.run(run(args, cfg))
    except MangaDexError as e:
        print(Colors.error(str(e)), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
