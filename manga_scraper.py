"""
Manga Scraper Module - search, chapter lists and page images for manga sites
Supported sources: MangaReader, MangaDex, Mangakakalot, Manga4Life, MangaFox, GManga, ReadManhwa

Every adapter exposes the same three operations (search, fetch_chapter_list,
fetch_chapter_images) and is selected by a source key through get_scraper().
"""

import re
import json
import time
import base64
import hashlib
import logging
import requests
from bs4 import BeautifulSoup
from dataclasses import dataclass, field, asdict
from urllib.parse import quote, urljoin
from typing import Any, Callable, Dict, List, Optional, Type

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from chapter_range import ChapterNumber, to_chapter_number
from errors import ChapterNotFound, NoResultsFound, UnsupportedSource, UpstreamError
from fetcher import DEFAULT_TIMEOUT, RetryPolicy, fetch_html, fetch_json
from title_match import find_closest_match, rank_titles

logger = logging.getLogger(__name__)

CHAPTER_URL_RE = re.compile(r'chapter-(\d+(?:\.\d+)?)')


@dataclass
class TitleCandidate:
    """A search hit: a title plus whatever identifies it on its site"""
    name: str
    url: Optional[str] = None
    slug: Optional[str] = None
    latest: Optional[str] = None
    status: Optional[str] = None
    updated: Optional[str] = None
    referer: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None and k != 'extra'}
        data.update(self.extra)
        return data


@dataclass
class MangaInfo:
    title: str
    candidate: TitleCandidate
    chapters: Optional[List[ChapterNumber]]  # None when the source cannot list chapters
    referer: Optional[str] = None


def _sorted_chapters(numbers) -> List[ChapterNumber]:
    return sorted({to_chapter_number(n) for n in numbers})


class MangaScraper:
    """Base adapter - holds the HTTP session and the shared fetch helpers"""

    key = ''
    aliases: tuple = ()
    name = ''
    base_url = ''
    referer: Optional[str] = None
    mirror_images = False         # images must be downloaded and served locally
    supports_fractional = False   # spans without a chapter list step by 0.5

    def __init__(self, session: Optional[requests.Session] = None,
                 policy: Optional[RetryPolicy] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session or requests.Session()
        self.policy = policy
        self.timeout = timeout
        self.sleep = sleep

    def _request_kwargs(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        kwargs.setdefault('timeout', self.timeout)
        return dict(kwargs, session=self.session, policy=self.policy, sleep=self.sleep)

    def _soup(self, url: str, **kwargs) -> BeautifulSoup:
        return fetch_html(url, **self._request_kwargs(kwargs))

    def _json(self, url: str, method: str = 'GET', **kwargs) -> Any:
        return fetch_json(url, method=method, **self._request_kwargs(kwargs))

    # === Capability interface ===

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        raise NotImplementedError

    def fetch_chapter_list(self, candidate: TitleCandidate) -> Optional[List[ChapterNumber]]:
        """Ascending chapter numbers, or None when the source cannot list them"""
        raise NotImplementedError

    def _chapter_images(self, candidate: TitleCandidate, chapter: ChapterNumber,
                        language: str) -> List[str]:
        raise NotImplementedError

    def fetch_chapter_images(self, candidate: TitleCandidate, chapter: ChapterNumber,
                             language: str = 'en') -> List[str]:
        """Remote image URLs for one chapter, in page order"""
        try:
            images = self._chapter_images(candidate, chapter, language)
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise ChapterNotFound(f"Chapter {chapter} not found on {self.name}") from e
            raise
        if not images:
            raise ChapterNotFound(f"No images found for chapter {chapter} on {self.name}")
        return images

    def get_manga_info(self, title: str) -> MangaInfo:
        logger.info(f"Searching {self.name} for: {title}")
        candidates = self.search(title, limit=1)
        candidate = find_closest_match(title, candidates, key=lambda c: c.name)
        chapters = self.fetch_chapter_list(candidate)
        if chapters is not None:
            logger.info(f"{self.name}: {candidate.name} has {len(chapters)} chapters")
        return MangaInfo(
            title=candidate.name or title,
            candidate=candidate,
            chapters=chapters,
            referer=candidate.referer or self.referer,
        )

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        return {
            'key': cls.key,
            'aliases': list(cls.aliases),
            'name': cls.name,
            'url': cls.base_url,
            'mirrored': cls.mirror_images,
        }


class MangaReaderScraper(MangaScraper):
    key = '1'
    aliases = ('mangareader',)
    name = 'MangaReader'
    base_url = 'https://mangareader.to'
    referer = 'https://mangareader.to'
    mirror_images = True

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        soup = self._soup(f"{self.base_url}/search", params={'keyword': query})

        results = []
        for item in soup.select('.manga-item')[:limit]:
            link = item.select_one('a')
            name_elem = item.select_one('.manga-name')
            info = item.select('.fd-infor .fdi-item')
            if not link or not link.get('href'):
                continue
            results.append(TitleCandidate(
                name=name_elem.get_text(strip=True) if name_elem else '',
                url=urljoin(self.base_url, link['href']),
                latest=info[0].get_text(strip=True) if info else None,
                updated=info[-1].get_text(strip=True) if info else None,
            ))

        if not results:
            raise NoResultsFound("No manga found")
        return results

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        soup = self._soup(candidate.url)
        chapters = []
        for item in soup.select('.chapter-list .chapter-item'):
            link = item.select_one('a')
            match = CHAPTER_URL_RE.search(link.get('href', '')) if link else None
            if match:
                chapters.append(match.group(1))
        return _sorted_chapters(chapters)

    def _chapter_images(self, candidate, chapter, language):
        soup = self._soup(f"{candidate.url}/chapter-{chapter}", headers={'Referer': self.referer})
        images = []
        for img in soup.select('.chapter-content img'):
            src = img.get('data-src') or img.get('src')
            if src:
                images.append(src)
        return images


class MangaDexScraper(MangaScraper):
    key = '2'
    aliases = ('mangadex',)
    name = 'MangaDex'
    base_url = 'https://api.mangadex.org'
    supports_fractional = True

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        data = self._json(f"{self.base_url}/manga", params={
            'title': query,
            'limit': limit,
            'order[relevance]': 'desc',
        })

        results = []
        for manga in data.get('data', []):
            titles = manga.get('attributes', {}).get('title', {})
            title = titles.get('en') or next(iter(titles.values()), '') or query
            results.append(TitleCandidate(
                name=title,
                slug=manga['id'],
                url=f"https://mangadex.org/title/{manga['id']}",
                status=manga.get('attributes', {}).get('status'),
            ))

        if not results:
            raise NoResultsFound("Manga not found")
        return results

    def fetch_chapter_list(self, candidate: TitleCandidate) -> None:
        # Chapters are looked up one number at a time
        return None

    def _chapter_images(self, candidate, chapter, language):
        found = self._json(f"{self.base_url}/chapter", params={
            'manga': candidate.slug,
            'chapter': str(chapter),
            'translatedLanguage[]': language,
            'limit': 1,
        })
        if not found.get('data'):
            raise ChapterNotFound(f"Chapter {chapter} not found for {candidate.name}")
        chapter_id = found['data'][0]['id']

        server = self._json(f"{self.base_url}/at-home/server/{chapter_id}")
        try:
            base = server['baseUrl']
            chapter_hash = server['chapter']['hash']
            pages = server['chapter']['data']
        except (KeyError, TypeError) as e:
            raise UpstreamError(f"Incomplete at-home server data for chapter {chapter_id}") from e
        return [f"{base}/data/{chapter_hash}/{page}" for page in pages]


class MangakakalotScraper(MangaScraper):
    key = '3'
    aliases = ('mangakakalot', 'manganelo')
    name = 'Mangakakalot'
    base_url = 'https://mangakakalot.com'
    referer = 'https://mangakakalot.com'
    mirror_images = True

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        soup = self._soup(f"{self.base_url}/search/story/{quote(query.replace(' ', '_'))}")

        results = []
        for item in soup.select('.story_item')[:limit]:
            link = item.select_one('.story_name a')
            if not link:
                continue
            latest = item.select_one('.story_chapter a')
            right = item.select_one('.story_item_right')
            updated = re.search(r'Updated : (.*)', right.get_text()) if right else None
            results.append(TitleCandidate(
                name=link.get_text(strip=True),
                url=link.get('href'),
                referer=link.get('href'),
                latest=latest.get('title') if latest else None,
                updated=updated.group(1).strip() if updated else 'Unknown',
            ))

        if not results:
            raise NoResultsFound("No manga found")
        return results

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        soup = self._soup(candidate.url)
        chapters = []
        for row in soup.select('.chapter-list .row'):
            link = row.select_one('a')
            match = CHAPTER_URL_RE.search(link.get('href', '')) if link else None
            if match:
                chapters.append(match.group(1))
        return _sorted_chapters(chapters)

    def _chapter_images(self, candidate, chapter, language):
        referer = candidate.referer or self.referer
        soup = self._soup(f"{candidate.url}/chapter-{chapter}", headers={'Referer': referer})
        return [img['src'] for img in soup.select('.container-chapter-reader img') if img.get('src')]


def decode_chapter_code(code: str) -> ChapterNumber:
    """Manga4Life chapter codes: index digit, 4 digit chapter, decimal digit"""
    whole = int(code[1:-1])
    decimal = int(code[-1])
    return to_chapter_number(whole + decimal / 10)


class Manga4LifeScraper(MangaScraper):
    key = '4'
    aliases = ('manga4life', 'weebverse', 'mangasee')
    name = 'Manga4Life'
    base_url = 'https://manga4life.com'
    referer = 'https://manga4life.com'
    supports_fractional = True

    def _script_value(self, soup: BeautifulSoup, variable: str) -> Any:
        pattern = re.compile(rf'vm\.{variable} = (.*);')
        for script in soup.find_all('script'):
            match = pattern.search(script.string or script.get_text() or '')
            if match:
                try:
                    return json.loads(match.group(1))
                except ValueError as e:
                    raise UpstreamError(f"Could not parse vm.{variable} on {self.name}") from e
        raise UpstreamError(f"vm.{variable} not found on {self.name} page")

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        directory = self._script_value(self._soup(f"{self.base_url}/search/"), 'Directory')

        ranked = rank_titles(query, directory, key=lambda m: m.get('s', ''), limit=limit)
        results = [TitleCandidate(
            name=manga.get('s', ''),
            slug=manga.get('i'),
            url=f"{self.base_url}/manga/{manga.get('i')}",
            latest=manga.get('l'),
            status=manga.get('ss'),
            updated=manga.get('ls'),
        ) for manga in ranked]

        if not results:
            raise NoResultsFound("No manga found")
        return results

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        chapters = self._script_value(self._soup(f"{self.base_url}/manga/{candidate.slug}"), 'Chapters')
        return _sorted_chapters(decode_chapter_code(c['Chapter']) for c in chapters if c.get('Chapter'))

    def _chapter_images(self, candidate, chapter, language):
        soup = self._soup(f"{self.base_url}/read-online/{candidate.slug}-chapter-{chapter}-index-1.html")
        current = self._script_value(soup, 'CurChapter')
        host = self._script_value(soup, 'CurPathName')

        code = current['Chapter']
        number = code[1:-1].zfill(4)
        if code[-1] != '0':
            number = f"{number}.{code[-1]}"
        directory = f"/{current['Directory']}" if current.get('Directory') else ''
        total_pages = int(current['Page'])

        return [f"https://{host}/manga/{candidate.slug}{directory}/{number}-{page:03d}.png"
                for page in range(1, total_pages + 1)]


class FanfoxScraper(MangaScraper):
    key = 'fanfox'
    aliases = ('mangafox',)
    name = 'MangaFox'
    base_url = 'http://m.fanfox.net'
    referer = 'https://fanfox.net'
    supports_fractional = True

    @staticmethod
    def _slug(candidate: TitleCandidate) -> str:
        if candidate.slug:
            return candidate.slug
        match = re.search(r'/manga/([^/?#]+)', candidate.url or '')
        if not match:
            raise UpstreamError(f"Cannot derive MangaFox slug from {candidate.url}")
        return match.group(1)

    @staticmethod
    def chapter_code(chapter: ChapterNumber) -> str:
        chapter = to_chapter_number(chapter)
        if isinstance(chapter, int):
            return f"c{chapter:03d}"
        whole, fraction = str(chapter).split('.')
        return f"c{int(whole):03d}.{fraction}"

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        soup = self._soup(f"{self.base_url}/search", params={'k': query})

        results = []
        for item in soup.select('.post-one.clearfix')[:limit]:
            link = item.select_one('a')
            if not link:
                continue
            title = item.select_one('.title')
            status = item.select_one('.status')
            genre = item.select_one('p:not(.title):not(.status)')
            url = urljoin(self.base_url, link.get('href', ''))
            candidate = TitleCandidate(
                name=title.get_text(strip=True) if title else link.get_text(strip=True),
                url=url,
                status=status.get_text(strip=True) if status else None,
                extra={'genre': genre.get_text(strip=True)} if genre else {},
            )
            candidate.slug = self._slug(candidate)
            results.append(candidate)

        if not results:
            raise NoResultsFound("No manga found")
        return results

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        soup = self._soup(f"{self.base_url}/manga/{self._slug(candidate)}")
        chapters = []
        for link in soup.select('a[href*="/manga/"]'):
            match = re.search(r'/c(\d+(?:\.\d+)?)(?:/|$)', link.get('href', ''))
            if match:
                chapters.append(match.group(1))
        return _sorted_chapters(chapters)

    def _chapter_images(self, candidate, chapter, language):
        url = f"{self.base_url}/roll_manga/{self._slug(candidate)}/{self.chapter_code(chapter)}/1.html"
        soup = self._soup(url)
        images = []
        for img in soup.select('img.reader-main-img'):
            src = img.get('data-src')
            if src:
                images.append(urljoin('https:', src) if src.startswith('//') else src)
        return images


def decrypt_gmanga_data(encrypted: str) -> str:
    """Decrypt a GManga "data|iv|key" payload (AES-256-CBC, key = sha256(key))"""
    try:
        data, iv, key = encrypted.split('|')
    except (AttributeError, ValueError) as e:
        raise UpstreamError("Unexpected GManga payload format") from e

    try:
        decryptor = Cipher(
            algorithms.AES(hashlib.sha256(key.encode('utf-8')).digest()),
            modes.CBC(base64.b64decode(iv)),
        ).decryptor()
        padded = decryptor.update(base64.b64decode(data)) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode('utf-8')
    except ValueError as e:
        raise UpstreamError("Could not decrypt GManga payload") from e


class GmangaScraper(MangaScraper):
    key = 'gmanga'
    name = 'GManga'
    base_url = 'https://gmanga.org'
    referer = 'https://gmanga.org'
    media_url = 'https://media.gmanga.org/uploads/releases'
    supports_fractional = True

    STATUSES = {2: 'Ongoing', 3: 'Completed'}

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        data = self._json(
            f"{self.base_url}/api/quick_search",
            method='POST',
            json={'query': query, 'includes': ['Manga']},
            headers={'Content-Type': 'application/json', 'Referer': self.referer},
        )
        try:
            mangas = data[0]['data']
        except (KeyError, IndexError, TypeError):
            mangas = []

        if not mangas:
            raise NoResultsFound("No manga found")

        return [TitleCandidate(
            name=manga.get('title', ''),
            slug=str(manga['id']),
            url=f"{self.base_url}/mangas/{manga['id']}",
            latest=manga.get('latest_chapter'),
            status=self.STATUSES.get(manga.get('story_status'), 'Unknown'),
        ) for manga in mangas[:limit]]

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        payload = self._json(f"{self.base_url}/api/mangas/{candidate.slug}/releases")
        try:
            releases = json.loads(decrypt_gmanga_data(payload['data']))
            rows = releases['rows'][2]['rows']
            return _sorted_chapters(row[1] for row in rows)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamError(f"Unexpected GManga release list for {candidate.slug}") from e

    def _chapter_images(self, candidate, chapter, language):
        soup = self._soup(f"{self.base_url}/mangas/{candidate.slug}/{chapter}/",
                          headers={'Referer': self.referer})
        component = soup.select_one('.js-react-on-rails-component')
        if component is None or not component.get('data-props'):
            raise UpstreamError(f"GManga reader data missing for chapter {chapter}")
        try:
            release = json.loads(component['data-props'])['readerDataAction']['readerData']['release']
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Unexpected GManga reader data for chapter {chapter}") from e

        webp = bool(release.get('webp_pages'))
        pages = release.get('webp_pages') or release.get('pages') or []
        folder = 'mq_webp' if webp else 'mq'
        return [f"{self.media_url}/{release['storage_key']}/{folder}/{page}" for page in pages]


class ReadManhwaScraper(MangaScraper):
    key = 'readmanhwa'
    name = 'ReadManhwa'
    base_url = 'https://readmanhwa.com'
    referer = 'https://readmanhwa.com'
    supports_fractional = True

    NSFW_HEADERS = {'X-NSFW': 'true', 'Accept-Language': 'en'}

    def search(self, query: str, limit: int = 5) -> List[TitleCandidate]:
        data = self._json(f"{self.base_url}/api/comics", headers=self.NSFW_HEADERS, params={
            'nsfw': 'true',
            'q': query,
            'per_page': limit,
            'sort': 'title',
        })
        if not data.get('total') or not data.get('data'):
            raise NoResultsFound("No manga found")

        return [TitleCandidate(
            name=manga.get('title', ''),
            slug=manga.get('slug'),
            url=f"{self.base_url}/comics/{manga.get('slug')}",
            latest=manga.get('uploaded_at'),
            status=manga.get('status'),
        ) for manga in data['data'][:limit]]

    def fetch_chapter_list(self, candidate: TitleCandidate) -> List[ChapterNumber]:
        data = self._json(f"{self.base_url}/api/comics/{candidate.slug}/chapters",
                          headers=self.NSFW_HEADERS, params={'nsfw': 'true'})
        return _sorted_chapters(c['number'] for c in data if c.get('number') is not None)

    def _chapter_images(self, candidate, chapter, language):
        data = self._json(f"{self.base_url}/api/comics/{candidate.slug}/chapter-{chapter}/images",
                          headers=self.NSFW_HEADERS, params={'nsfw': 'true'})
        if isinstance(data, dict):
            data = data.get('images', [])
        return [image['source_url'] for image in data if image.get('source_url')]


SCRAPERS: List[Type[MangaScraper]] = [
    MangaReaderScraper,
    MangaDexScraper,
    MangakakalotScraper,
    Manga4LifeScraper,
    FanfoxScraper,
    GmangaScraper,
    ReadManhwaScraper,
]


def get_scraper_class(source: str) -> Type[MangaScraper]:
    wanted = (source or '').strip().lower()
    for scraper_cls in SCRAPERS:
        if wanted == scraper_cls.key or wanted in scraper_cls.aliases:
            return scraper_cls
    raise UnsupportedSource(f"Unsupported source: {source!r}")


def get_scraper(source: str, **kwargs) -> MangaScraper:
    """Build the adapter registered under ``source`` (key or alias)"""
    return get_scraper_class(source)(**kwargs)


def list_sources() -> List[Dict[str, Any]]:
    return [scraper_cls.describe() for scraper_cls in SCRAPERS]
