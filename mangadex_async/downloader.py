import asyncio
import json
import re
import shutil
import time
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from tqdm.asyncio import tqdm as async_tqdm

from .api_client import MangaDexClient
from .colors import Colors
from .config import Config
from .errors import MangaDexError
from .models import Chapter, Manga


class ChapterDownloader:
    def __init__(self, cfg: Config):
        self.cfg = cfg
        self.cfg.output_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def sanitize_filename(text: str) -> str:
        text = text.strip()
        text = re.sub(r'[\\/*?:"<>|]', '_', text)
        return text[:200]

    @staticmethod
    def chapter_label(chapter: Chapter) -> str:
        parts = []
        if chapter.volume:
            parts.append(f"Vol. {chapter.volume}")
        parts.append(f"Ch. {chapter.chapter or '?'}")
        if chapter.title:
            parts.append(f"- {chapter.title}")
        return " ".join(parts)

    def comicinfo(self, chapter: Chapter, series_title: str, pages: int) -> bytes:
        root = ET.Element("ComicInfo")
        ET.SubElement(root, "Series").text = series_title
        if chapter.chapter:
            ET.SubElement(root, "Number").text = chapter.chapter
        if chapter.volume:
            ET.SubElement(root, "Volume").text = chapter.volume
        if chapter.title:
            ET.SubElement(root, "Title").text = chapter.title
        if chapter.group_names:
            ET.SubElement(root, "Translator").text = ", ".join(chapter.group_names)
        if chapter.translated_language:
            ET.SubElement(root, "LanguageISO").text = chapter.translated_language
        ET.SubElement(root, "PageCount").text = str(pages)
        ET.SubElement(root, "Web").text = f"https://mangadex.org/chapter/{chapter.id}"
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    async def download_chapter(self, api: MangaDexClient,
                               chapter_id: str) -> Optional[Tuple[Path, Chapter, str]]:
        tmp_dir = self.cfg.output_dir / f"_tmp_{chapter_id}_{int(time.time())}"
        tmp_dir.mkdir(parents=True, exist_ok=True)

        try:
            chapter = await api.get_chapter(chapter_id, includes=["scanlation_group"])
            if chapter.external_url:
                raise ValueError(f"hosted externally at {chapter.external_url}")

            series_title = await self._get_series_title(api, chapter)
            server = await api.get_at_home_server(chapter_id)
            urls = server.page_urls(data_saver=self.cfg.data_saver)
            if not urls:
                raise ValueError("No pages found")

            print(f"\n{Colors.chapter(self.chapter_label(chapter))} | {Colors.title(series_title)}")
            print(f"  Pages: {len(urls)} | Groups: {', '.join(chapter.group_names) or 'N/A'}")

            await self._download_images(api, urls, tmp_dir, chapter)
            return tmp_dir, chapter, series_title

        except (MangaDexError, ValueError, OSError) as e:
            print(Colors.error(f"Chapter {chapter_id}: {e}"))
            if tmp_dir.exists():
                shutil.rmtree(tmp_dir, ignore_errors=True)
            return None

    async def _get_series_title(self, api: MangaDexClient, chapter: Chapter) -> str:
        if not chapter.manga_id:
            return "Unknown"
        manga: Manga = await api.get_manga(chapter.manga_id)
        return manga.display_title

    async def _download_images(self, api: MangaDexClient, urls: List[str],
                               tmp_dir: Path, chapter: Chapter):
        sem = asyncio.Semaphore(self.cfg.max_concurrent_images)

        async def download_task(idx: int, url: str):
            async with sem:
                ext = Path(url).suffix or ".jpg"
                await api.download_image(url, tmp_dir / f"{idx:03d}{ext}")

        tasks = [asyncio.ensure_future(download_task(i + 1, url)) for i, url in enumerate(urls)]
        try:
            await async_tqdm.gather(
                *tasks,
                desc=f"  Ch. {chapter.chapter or '?'}",
                unit="img",
            )
        except BaseException:
            # stop the other pages before the caller removes tmp_dir
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def create_cbz(self, tmp_dir: Path, chapter: Chapter, series_title: str, cbz_path: Path):
        pages = sorted(f for f in tmp_dir.iterdir() if f.is_file())
        meta = {
            "series": series_title,
            "chapter": chapter.chapter,
            "volume": chapter.volume,
            "title": chapter.title,
            "chapter_id": chapter.id,
            "groups": chapter.group_names,
            "language": chapter.translated_language,
            "pages": len(pages),
            "created_at": time.strftime("%Y-%m-%d %H:%M:%S"),
        }

        cbz_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(cbz_path, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("info.txt", json.dumps(meta, ensure_ascii=False, indent=2))
            zf.writestr("ComicInfo.xml", self.comicinfo(chapter, series_title, len(pages)))
            for file in pages:
                zf.write(file, arcname=file.name)

    async def download_chapters(self, api: MangaDexClient, chapter_ids: Sequence[str]) -> List[Path]:
        sem = asyncio.Semaphore(self.cfg.max_concurrent_chapters)

        async def download_with_limit(chapter_id: str):
            async with sem:
                return await self.download_chapter(api, chapter_id)

        results = await asyncio.gather(
            *[download_with_limit(c) for c in chapter_ids],
            return_exceptions=True,
        )

        produced: List[Path] = []
        failed = 0
        for chapter_id, result in zip(chapter_ids, results):
            if isinstance(result, BaseException):
                print(Colors.error(f"Chapter {chapter_id}: {result}"))
                failed += 1
                continue
            if result is None:
                failed += 1
                continue
            tmp_dir, chapter, series_title = result
            series_dir = self.cfg.output_dir / self.sanitize_filename(series_title)
            cbz_path = series_dir / f"{self.sanitize_filename(self.chapter_label(chapter))}.cbz"
            self.create_cbz(tmp_dir, chapter, series_title, cbz_path)
            if self.cfg.cleanup_temp:
                shutil.rmtree(tmp_dir, ignore_errors=True)
            print(Colors.success(f"Saved {cbz_path.name}"))
            produced.append(cbz_path)

        self._print_summary(len(produced), len(chapter_ids), failed)
        return produced

    def _print_summary(self, successful: int, total: int, failed: int):
        print(f"\n{Colors.paint('═' * 50, Colors.BOLD)}")
        print(Colors.success(f"Completed: {successful}/{total} chapters"))
        if failed:
            print(Colors.info(f"Failed: {failed} chapters"))
        print(Colors.info(f"Output directory: {self.cfg.output_dir.absolute()}"))
        print(f"{Colors.paint('═' * 50, Colors.BOLD)}\n")
