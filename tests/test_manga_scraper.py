from __future__ import annotations

import base64
import hashlib
import json

import pytest
import responses
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

import manga_scraper
from errors import ChapterNotFound, NoResultsFound, UnsupportedSource, UpstreamError
from fetcher import RetryPolicy
from manga_scraper import (
    FanfoxScraper,
    GmangaScraper,
    Manga4LifeScraper,
    MangaDexScraper,
    MangakakalotScraper,
    MangaReaderScraper,
    ReadManhwaScraper,
    TitleCandidate,
    decode_chapter_code,
    decrypt_gmanga_data,
    get_scraper,
    list_sources,
)


def build(scraper_cls, attempts: int = 1):
    return scraper_cls(policy=RetryPolicy(attempts=attempts, base_delay=0), sleep=lambda s: None)


# --- Registry ---

@pytest.mark.parametrize(
    "source,expected",
    [
        ("1", MangaReaderScraper),
        ("mangareader", MangaReaderScraper),
        ("2", MangaDexScraper),
        (" MangaDex ", MangaDexScraper),
        ("3", MangakakalotScraper),
        ("4", Manga4LifeScraper),
        ("mangafox", FanfoxScraper),
        ("gmanga", GmangaScraper),
        ("readmanhwa", ReadManhwaScraper),
    ],
)
def test_get_scraper_by_key_or_alias(source: str, expected):
    assert isinstance(get_scraper(source), expected)


@pytest.mark.parametrize("source", ["", "99", "batoto"])
def test_get_scraper_rejects_unknown_sources(source: str):
    with pytest.raises(UnsupportedSource):
        get_scraper(source)


def test_list_sources_describes_every_adapter():
    keys = [s["key"] for s in list_sources()]
    assert keys == ["1", "2", "3", "4", "fanfox", "gmanga", "readmanhwa"]
    mirrored = {s["key"] for s in list_sources() if s["mirrored"]}
    assert mirrored == {"1", "3"}


# --- MangaReader ---

MANGAREADER_SEARCH = """
<div class="manga-item">
  <a href="/one-piece-3"><h3 class="manga-name">One Piece</h3></a>
  <div class="fd-infor"><span class="fdi-item">Chapter 1100</span><span class="fdi-item">2 days ago</span></div>
</div>
<div class="manga-item">
  <a href="/one-piece-party-9"><h3 class="manga-name">One Piece Party</h3></a>
</div>
"""

MANGAREADER_DETAILS = """
<ul class="chapter-list">
  <li class="chapter-item"><a href="/read/one-piece-3/en/chapter-3">Chapter 3</a></li>
  <li class="chapter-item"><a href="/read/one-piece-3/en/chapter-2.5">Chapter 2.5</a></li>
  <li class="chapter-item"><a href="/read/one-piece-3/en/chapter-2">Chapter 2</a></li>
  <li class="chapter-item"><a href="/read/one-piece-3/en/chapter-1">Chapter 1</a></li>
  <li class="chapter-item"><a href="/read/one-piece-3/en/extra">Extra</a></li>
</ul>
"""


def test_mangareader_search_limits_results(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/search", body=MANGAREADER_SEARCH)
    results = build(MangaReaderScraper).search("one piece", limit=1)
    assert len(results) == 1
    assert results[0].name == "One Piece"
    assert results[0].url == "https://mangareader.to/one-piece-3"
    assert results[0].latest == "Chapter 1100"
    assert results[0].updated == "2 days ago"
    assert "keyword=one+piece" in responses_mock.calls[0].request.url


def test_mangareader_search_without_hits_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/search", body="<div></div>")
    with pytest.raises(NoResultsFound):
        build(MangaReaderScraper).search("nothing")


def test_mangareader_chapter_list_is_ascending(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/one-piece-3", body=MANGAREADER_DETAILS)
    candidate = TitleCandidate(name="One Piece", url="https://mangareader.to/one-piece-3")
    assert build(MangaReaderScraper).fetch_chapter_list(candidate) == [1, 2, 2.5, 3]


def test_mangareader_chapter_images_prefer_data_src(responses_mock: responses.RequestsMock):
    responses_mock.add(
        responses.GET,
        "https://mangareader.to/one-piece-3/chapter-2",
        body='<div class="chapter-content"><img data-src="https://cdn/a.jpg" src="lazy.gif"><img src="https://cdn/b.jpg"></div>',
    )
    candidate = TitleCandidate(name="One Piece", url="https://mangareader.to/one-piece-3")
    images = build(MangaReaderScraper).fetch_chapter_images(candidate, 2)
    assert images == ["https://cdn/a.jpg", "https://cdn/b.jpg"]


def test_chapter_without_images_is_not_found(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/x/chapter-9", body="<div></div>")
    with pytest.raises(ChapterNotFound):
        build(MangaReaderScraper).fetch_chapter_images(TitleCandidate(name="X", url="https://mangareader.to/x"), 9)


def test_missing_chapter_page_is_not_found(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/x/chapter-9", status=404)
    with pytest.raises(ChapterNotFound):
        build(MangaReaderScraper, attempts=3).fetch_chapter_images(
            TitleCandidate(name="X", url="https://mangareader.to/x"), 9)
    assert len(responses_mock.calls) == 3


def test_get_manga_info_uses_search_and_chapter_list(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangareader.to/search", body=MANGAREADER_SEARCH)
    responses_mock.add(responses.GET, "https://mangareader.to/one-piece-3", body=MANGAREADER_DETAILS)
    info = build(MangaReaderScraper).get_manga_info("One Peice")
    assert info.title == "One Piece"
    assert info.chapters == [1, 2, 2.5, 3]
    assert info.referer == "https://mangareader.to"


# --- MangaDex ---

def test_mangadex_search_prefers_english_title(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://api.mangadex.org/manga", json={"data": [
        {"id": "abc-123", "attributes": {"title": {"en": "Berserk"}, "status": "ongoing"}},
    ]})
    results = build(MangaDexScraper).search("berserk", limit=1)
    assert results[0].name == "Berserk"
    assert results[0].slug == "abc-123"
    assert results[0].url == "https://mangadex.org/title/abc-123"


def test_mangadex_search_falls_back_to_first_title(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://api.mangadex.org/manga", json={"data": [
        {"id": "abc-123", "attributes": {"title": {"ja-ro": "Shingeki no Kyojin"}}},
    ]})
    assert build(MangaDexScraper).search("aot")[0].name == "Shingeki no Kyojin"


def test_mangadex_search_without_hits_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://api.mangadex.org/manga", json={"data": []})
    with pytest.raises(NoResultsFound):
        build(MangaDexScraper).search("nothing")


def test_mangadex_has_no_chapter_list():
    assert build(MangaDexScraper).fetch_chapter_list(TitleCandidate(name="Berserk", slug="abc")) is None


def test_mangadex_chapter_images_from_at_home_server(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://api.mangadex.org/chapter", json={"data": [{"id": "ch-1"}]})
    responses_mock.add(responses.GET, "https://api.mangadex.org/at-home/server/ch-1", json={
        "baseUrl": "https://uploads.example.org",
        "chapter": {"hash": "h4sh", "data": ["1.png", "2.png"]},
    })
    candidate = TitleCandidate(name="Berserk", slug="abc-123")
    images = build(MangaDexScraper).fetch_chapter_images(candidate, 5, language="fr")
    assert images == [
        "https://uploads.example.org/data/h4sh/1.png",
        "https://uploads.example.org/data/h4sh/2.png",
    ]
    query = responses_mock.calls[0].request.url
    assert "manga=abc-123" in query
    assert "chapter=5" in query
    assert "fr" in query


def test_mangadex_missing_chapter_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://api.mangadex.org/chapter", json={"data": []})
    with pytest.raises(ChapterNotFound):
        build(MangaDexScraper).fetch_chapter_images(TitleCandidate(name="Berserk", slug="abc"), 400)


# --- Mangakakalot ---

MANGAKAKALOT_SEARCH = """
<div class="story_item">
  <h3 class="story_name"><a href="https://mangakakalot.com/manga/bleach">Bleach</a></h3>
  <em class="story_chapter"><a title="Chapter 686">Chapter 686</a></em>
  <div class="story_item_right"><span>Author(s) : Kubo</span><span>Updated : Jan-01-2020 10:00</span></div>
</div>
"""


def test_mangakakalot_search(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangakakalot.com/search/story/bleach_manga", body=MANGAKAKALOT_SEARCH)
    result = build(MangakakalotScraper).search("bleach manga")[0]
    assert result.name == "Bleach"
    assert result.url == "https://mangakakalot.com/manga/bleach"
    assert result.referer == "https://mangakakalot.com/manga/bleach"
    assert result.latest == "Chapter 686"
    assert result.updated == "Jan-01-2020 10:00"


def test_mangakakalot_chapters_and_images_send_referer(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://mangakakalot.com/manga/bleach", body="""
        <div class="chapter-list">
          <div class="row"><a href="https://mangakakalot.com/manga/bleach/chapter-2">2</a></div>
          <div class="row"><a href="https://mangakakalot.com/manga/bleach/chapter-1">1</a></div>
        </div>""")
    responses_mock.add(responses.GET, "https://mangakakalot.com/manga/bleach/chapter-1", body="""
        <div class="container-chapter-reader"><img src="https://img/1.jpg"><img src="https://img/2.jpg"></div>""")
    scraper = build(MangakakalotScraper)
    candidate = TitleCandidate(name="Bleach", url="https://mangakakalot.com/manga/bleach",
                               referer="https://mangakakalot.com/manga/bleach")

    assert scraper.fetch_chapter_list(candidate) == [1, 2]
    assert scraper.fetch_chapter_images(candidate, 1) == ["https://img/1.jpg", "https://img/2.jpg"]
    assert responses_mock.calls[1].request.headers["Referer"] == "https://mangakakalot.com/manga/bleach"


# --- Manga4Life ---

M4L_SEARCH = """
<html><body>
<script>
  vm.Directory = [{"s": "Bleach", "i": "Bleach", "l": "686", "ss": "Complete", "ls": "2016"}, {"s": "One Piece", "i": "One-Piece", "l": "1100", "ss": "Ongoing", "ls": "2024"}];
</script>
</body></html>
"""

M4L_DETAILS = """
<script>
  vm.Chapters = [{"Chapter": "100020"}, {"Chapter": "100015"}, {"Chapter": "100010"}];
</script>
"""

M4L_READER = """
<script>
  vm.CurChapter = {"Chapter": "100015", "Directory": "", "Page": "3"};
  vm.CurPathName = "hot.example.us";
</script>
"""


@pytest.mark.parametrize("code,expected", [("100010", 1), ("100015", 1.5), ("110000", 1000), ("200050", 5)])
def test_decode_chapter_code(code: str, expected):
    assert decode_chapter_code(code) == expected


def test_manga4life_search_ranks_directory(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://manga4life.com/search/", body=M4L_SEARCH)
    results = build(Manga4LifeScraper).search("one piece", limit=1)
    assert [r.name for r in results] == ["One Piece"]
    assert results[0].slug == "One-Piece"
    assert results[0].status == "Ongoing"


def test_manga4life_chapter_list(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://manga4life.com/manga/One-Piece", body=M4L_DETAILS)
    chapters = build(Manga4LifeScraper).fetch_chapter_list(TitleCandidate(name="One Piece", slug="One-Piece"))
    assert chapters == [1, 1.5, 2]


def test_manga4life_builds_image_urls(responses_mock: responses.RequestsMock):
    responses_mock.add(
        responses.GET,
        "https://manga4life.com/read-online/One-Piece-chapter-1.5-index-1.html",
        body=M4L_READER,
    )
    images = build(Manga4LifeScraper).fetch_chapter_images(TitleCandidate(name="One Piece", slug="One-Piece"), 1.5)
    assert images == [
        "https://hot.example.us/manga/One-Piece/0001.5-001.png",
        "https://hot.example.us/manga/One-Piece/0001.5-002.png",
        "https://hot.example.us/manga/One-Piece/0001.5-003.png",
    ]


def test_manga4life_missing_script_is_upstream_error(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://manga4life.com/search/", body="<html></html>")
    with pytest.raises(UpstreamError):
        build(Manga4LifeScraper).search("one piece")


# --- MangaFox ---

@pytest.mark.parametrize("chapter,expected", [(5, "c005"), (120, "c120"), (12.5, "c012.5")])
def test_fanfox_chapter_code(chapter, expected: str):
    assert FanfoxScraper.chapter_code(chapter) == expected


def test_fanfox_search_derives_slug(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "http://m.fanfox.net/search", body="""
        <div class="post-one clearfix">
          <a href="//m.fanfox.net/manga/vagabond/"><p class="title">Vagabond</p></a>
          <p>Action, Drama</p>
          <p class="status">Completed</p>
        </div>""")
    result = build(FanfoxScraper).search("vagabond")[0]
    assert result.name == "Vagabond"
    assert result.slug == "vagabond"
    assert result.status == "Completed"


def test_fanfox_chapters_and_images(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "http://m.fanfox.net/manga/vagabond", body="""
        <a href="//m.fanfox.net/manga/vagabond/v01/c001/1.html">1</a>
        <a href="//m.fanfox.net/manga/vagabond/v01/c002.5/1.html">2.5</a>
        <a href="//m.fanfox.net/manga/vagabond/">home</a>""")
    responses_mock.add(responses.GET, "http://m.fanfox.net/roll_manga/vagabond/c001/1.html", body="""
        <img class="reader-main-img" data-src="//img.fanfox.net/1.jpg">
        <img class="reader-main-img" data-src="https://img.fanfox.net/2.jpg">""")
    scraper = build(FanfoxScraper)
    candidate = TitleCandidate(name="Vagabond", slug="vagabond")

    assert scraper.fetch_chapter_list(candidate) == [1, 2.5]
    assert scraper.fetch_chapter_images(candidate, 1) == ["https://img.fanfox.net/1.jpg", "https://img.fanfox.net/2.jpg"]


# --- GManga ---

def encrypt_gmanga(plain: str, key: str = "secret-key", iv: bytes = b"0123456789abcdef") -> str:
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plain.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(hashlib.sha256(key.encode("utf-8")).digest()), modes.CBC(iv)).encryptor()
    data = encryptor.update(padded) + encryptor.finalize()
    return f"{base64.b64encode(data).decode()}|{base64.b64encode(iv).decode()}|{key}"


def test_decrypt_gmanga_data_round_trip():
    assert decrypt_gmanga_data(encrypt_gmanga('{"rows": []}')) == '{"rows": []}'


def test_decrypt_gmanga_data_rejects_bad_format():
    with pytest.raises(UpstreamError):
        decrypt_gmanga_data("no-separators")


def test_gmanga_search_posts_query(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.POST, "https://gmanga.org/api/quick_search", json=[{"data": [
        {"id": 12, "title": "Solo Leveling", "latest_chapter": "200", "story_status": 3},
    ]}])
    result = build(GmangaScraper).search("solo leveling")[0]
    assert result.name == "Solo Leveling"
    assert result.slug == "12"
    assert result.status == "Completed"
    assert json.loads(responses_mock.calls[0].request.body) == {"query": "solo leveling", "includes": ["Manga"]}


def test_gmanga_search_without_hits_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.POST, "https://gmanga.org/api/quick_search", json=[{"data": []}])
    with pytest.raises(NoResultsFound):
        build(GmangaScraper).search("nothing")


def test_gmanga_chapter_list_decrypts_releases(responses_mock: responses.RequestsMock):
    releases = {"rows": [{}, {}, {"rows": [[1, "3"], [2, "1"], [3, 2]]}]}
    responses_mock.add(responses.GET, "https://gmanga.org/api/mangas/12/releases",
                       json={"data": encrypt_gmanga(json.dumps(releases))})
    chapters = build(GmangaScraper).fetch_chapter_list(TitleCandidate(name="Solo Leveling", slug="12"))
    assert chapters == [1, 2, 3]


def test_gmanga_images_from_reader_props(responses_mock: responses.RequestsMock):
    props = {"readerDataAction": {"readerData": {"release": {
        "storage_key": "key1", "pages": ["1.jpg"], "webp_pages": ["1.webp", "2.webp"],
    }}}}
    body = f"<div class='js-react-on-rails-component' data-props='{json.dumps(props)}'></div>"
    responses_mock.add(responses.GET, "https://gmanga.org/mangas/12/7/", body=body)
    images = build(GmangaScraper).fetch_chapter_images(TitleCandidate(name="Solo Leveling", slug="12"), 7)
    assert images == [
        "https://media.gmanga.org/uploads/releases/key1/mq_webp/1.webp",
        "https://media.gmanga.org/uploads/releases/key1/mq_webp/2.webp",
    ]


# --- ReadManhwa ---

def test_readmanhwa_search_and_chapters(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://readmanhwa.com/api/comics", json={
        "total": 1,
        "data": [{"title": "Tower of God", "slug": "tower-of-god", "uploaded_at": "2024-01-01", "status": "ongoing"}],
    })
    responses_mock.add(responses.GET, "https://readmanhwa.com/api/comics/tower-of-god/chapters",
                       json=[{"number": 2}, {"number": 1}, {"number": 1.5}])
    scraper = build(ReadManhwaScraper)

    result = scraper.search("tower of god")[0]
    assert result.slug == "tower-of-god"
    assert responses_mock.calls[0].request.headers["X-NSFW"] == "true"
    assert scraper.fetch_chapter_list(result) == [1, 1.5, 2]


def test_readmanhwa_search_without_hits_raises(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://readmanhwa.com/api/comics", json={"total": 0, "data": []})
    with pytest.raises(NoResultsFound):
        build(ReadManhwaScraper).search("nothing")


def test_readmanhwa_images(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://readmanhwa.com/api/comics/tower-of-god/chapter-1/images",
                       json=[{"source_url": "https://cdn/1.jpg"}, {"source_url": "https://cdn/2.jpg"}])
    images = build(ReadManhwaScraper).fetch_chapter_images(TitleCandidate(name="Tower of God", slug="tower-of-god"), 1)
    assert images == ["https://cdn/1.jpg", "https://cdn/2.jpg"]


def test_candidate_to_dict_drops_empty_fields():
    candidate = TitleCandidate(name="Vagabond", slug="vagabond", extra={"genre": "Action"})
    assert candidate.to_dict() == {"name": "Vagabond", "slug": "vagabond", "genre": "Action"}


# --- Shared fetch helpers ---

def test_adapters_fetch_through_the_fetcher_with_their_settings(monkeypatch):
    calls = []

    def fake_fetch_json(url, **kwargs):
        calls.append((url, kwargs))
        return {"data": []}

    monkeypatch.setattr(manga_scraper, "fetch_json", fake_fetch_json)
    scraper = MangaDexScraper(policy=RetryPolicy(attempts=2), timeout=7)

    with pytest.raises(NoResultsFound):
        scraper.search("bleach")

    url, kwargs = calls[0]
    assert url == "https://api.mangadex.org/manga"
    assert kwargs["session"] is scraper.session
    assert kwargs["policy"] == RetryPolicy(attempts=2)
    assert kwargs["timeout"] == 7
    assert kwargs["method"] == "GET"


def test_adapter_invalid_json_is_upstream_error(responses_mock: responses.RequestsMock):
    responses_mock.add(responses.GET, "https://readmanhwa.com/api/comics", body="<html>oops</html>")
    with pytest.raises(UpstreamError):
        build(ReadManhwaScraper).search("solo")
