"""
Manga Utilities - mirror chapter images to local storage and render responses
"""

import os
import re
import logging
import posixpath
import requests
import xml.etree.ElementTree as ET
from urllib.parse import urlparse
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from chapter_range import ChapterNumber
from fetcher import RetryPolicy, fetch_with_retry

logger = logging.getLogger(__name__)

IMAGES_PREFIX = '/images'


def clean_filename(name: str) -> str:
    """Lowercase the name and replace anything but [a-z0-9] with underscores"""
    return re.sub(r'[^a-z0-9]', '_', (name or '').lower())


def image_extension(url: str) -> str:
    ext = posixpath.splitext(urlparse(url).path)[1]
    return ext or '.jpg'


def chapter_dir_name(chapter: ChapterNumber) -> str:
    return f"chapter-{chapter}"


def public_image_url(base_url: str, *parts: str) -> str:
    return f"{base_url.rstrip('/')}{IMAGES_PREFIX}/" + '/'.join(parts)


def mirror_chapter_images(image_urls: List[str], storage_root: str, manga_title: str,
                          chapter: ChapterNumber, base_url: str,
                          referer: Optional[str] = None,
                          session: Optional[requests.Session] = None,
                          max_workers: Optional[int] = None,
                          policy: Optional[RetryPolicy] = None,
                          timeout: float = 30) -> List[str]:
    """Download every page of a chapter and return the URLs they are served from.

    Pages land in <storage_root>/<title>/chapter-<n>/page-001.jpg and so on.
    All downloads run at once unless ``max_workers`` bounds them; if one
    fails the error propagates once the others finish, and files already
    written are left in place.
    """
    if not image_urls:
        return []

    safe_title = clean_filename(manga_title)
    chapter_folder = chapter_dir_name(chapter)
    chapter_dir = os.path.join(storage_root, safe_title, chapter_folder)
    os.makedirs(chapter_dir, exist_ok=True)

    own_session = session is None
    session = session or requests.Session()
    headers = {'Accept': 'image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8'}
    if referer:
        headers['Referer'] = referer

    def download_single_image(index: int, img_url: str) -> str:
        data = fetch_with_retry(img_url, session=session, policy=policy,
                                headers=headers, timeout=timeout)
        filename = f"page-{index + 1:03d}{image_extension(img_url)}"
        with open(os.path.join(chapter_dir, filename), 'wb') as f:
            f.write(data)
        return public_image_url(base_url, safe_title, chapter_folder, filename)

    workers = max_workers or len(image_urls)
    try:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(download_single_image, i, url) for i, url in enumerate(image_urls)]
            results = [future.exception() or future.result() for future in futures]
    finally:
        if own_session:
            session.close()

    for result in results:
        if isinstance(result, BaseException):
            raise result

    logger.info(f"Mirrored {len(results)} images for {manga_title} {chapter_folder}")
    return results


def manga_data_to_xml(data: Dict[str, Any]) -> str:
    """Render a /manga response as XML"""
    root = ET.Element('manga')
    ET.SubElement(root, 'title').text = str(data.get('manga', ''))
    ET.SubElement(root, 'source').text = str(data.get('source', ''))

    chapters_elem = ET.SubElement(root, 'chapters')
    for chapter in data.get('chapters', []):
        chapter_elem = ET.SubElement(chapters_elem, 'chapter', number=str(chapter.get('chapter')))
        for image in chapter.get('images', []):
            ET.SubElement(chapter_elem, 'image').text = image

    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding='unicode')
