"""
Request orchestration: search -> chapter range -> page images -> (mirror)
"""

import logging
import requests
from typing import Any, Dict, List, Optional

from chapter_range import parse_chapter_expression, resolve_chapter_range
from config import Settings
from errors import ChapterNotFound, NoResultsFound
from fetcher import RetryPolicy
from manga_scraper import MangaScraper, get_scraper
from manga_utils import mirror_chapter_images
from title_match import find_closest_match

logger = logging.getLogger(__name__)


class MangaService:
    """Runs one /manga or /search request end to end"""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.storage_root = settings.downloads_dir
        self.policy = RetryPolicy.from_settings(settings)
        self.session = session

    def scraper_for(self, source: str) -> MangaScraper:
        return get_scraper(
            source or self.settings.default_source,
            session=self.session,
            policy=self.policy,
            timeout=self.settings.request_timeout,
        )

    def search(self, title: str, source: Optional[str] = None, limit: int = 5) -> List[Dict[str, Any]]:
        scraper = self.scraper_for(source)
        return [candidate.to_dict() for candidate in scraper.search(title, limit=limit)]

    def fetch_manga(self, title: str, chapter: str, source: Optional[str] = None,
                    quality: str = 'high', language: Optional[str] = None,
                    base_url: str = '') -> Dict[str, Any]:
        source = source or self.settings.default_source
        language = language or self.settings.default_language
        max_chapters = self.settings.max_chapters or None

        chapter_range = parse_chapter_expression(chapter)
        scraper = self.scraper_for(source)

        manga_info = scraper.get_manga_info(title)
        closest_title = find_closest_match(title, [manga_info.title])

        chapter_list = resolve_chapter_range(
            chapter_range,
            available=manga_info.chapters,
            max_chapters=max_chapters,
            fractional=scraper.supports_fractional,
        )
        if not chapter_list:
            raise NoResultsFound(f"No chapters of {closest_title} match {chapter!r}")

        logger.info(f"Fetching {closest_title} chapters {chapter_list} from {scraper.name}")

        manga_data = {
            'manga': closest_title,
            'source': source,
            'chapters': [],
        }

        for chapter_num in chapter_list:
            try:
                images = scraper.fetch_chapter_images(manga_info.candidate, chapter_num, language)
            except ChapterNotFound as e:
                logger.warning(f"Chapter {chapter_num} not found for {closest_title}: {e}")
                continue

            if scraper.mirror_images:
                images = mirror_chapter_images(
                    images,
                    self.storage_root,
                    closest_title,
                    chapter_num,
                    base_url,
                    referer=manga_info.referer,
                    session=scraper.session,
                    max_workers=self.settings.mirror_max_workers or None,
                    policy=self.policy,
                    timeout=self.settings.request_timeout,
                )

            if quality == 'low':
                images = images[::2]

            manga_data['chapters'].append({
                'chapter': chapter_num,
                'images': images,
            })

        return manga_data
