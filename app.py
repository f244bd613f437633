"""
Mangaverse HTTP API

GET /manga   - resolve a title and chapter range, return page images
GET /search  - list candidate titles on a source
GET /sources - list the available sources
/images/*    - mirrored chapter images
"""

import os
import logging
import requests
import uvicorn
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import Settings
from errors import MangaverseError
from manga_scraper import list_sources
from manga_service import MangaService
from manga_utils import IMAGES_PREFIX, manga_data_to_xml

settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'error': error, 'message': message})


def handle_errors(func, *args, **kwargs):
    """Run a handler body and map failures to JSON error responses"""
    try:
        return func(*args, **kwargs)
    except MangaverseError as e:
        logger.warning(f"{type(e).__name__}: {e}")
        return error_response(e.status_code, e.summary, str(e))
    except requests.RequestException as e:
        logger.error(f"Upstream request failed: {e}")
        return error_response(502, 'Upstream failure', str(e))
    except Exception as e:
        logger.exception("Unhandled error while fetching manga data")
        return error_response(500, 'Failed to fetch manga data', str(e))


def create_app(app_settings: Optional[Settings] = None,
               session: Optional[requests.Session] = None) -> FastAPI:
    app_settings = app_settings or settings
    os.makedirs(app_settings.downloads_dir, exist_ok=True)

    service = MangaService(app_settings, session=session)

    app = FastAPI(title="Mangaverse", version="1.0.0")
    app.state.settings = app_settings
    app.state.service = service

    limiter = Limiter(key_func=get_remote_address, default_limits=[app_settings.rate_limit])
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.exception_handler(RateLimitExceeded)
    def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return error_response(429, 'Too many requests', f"Rate limit exceeded: {exc.detail}")

    @app.middleware('http')
    async def _image_cors_headers(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith(IMAGES_PREFIX + '/'):
            for header, value in app_settings.cors_headers.items():
                response.headers[header] = value
        return response

    app.mount(IMAGES_PREFIX, StaticFiles(directory=app_settings.downloads_dir), name='images')

    def base_url_for(request: Request) -> str:
        return (app_settings.public_base_url or str(request.base_url)).rstrip('/')

    @app.get('/')
    def status():
        return {'message': 'Mangaverse API is running', 'status': 'online'}

    @app.get('/sources')
    def sources():
        return {'sources': list_sources()}

    @app.get('/search')
    def search(title: Optional[str] = None,
               name: Optional[str] = None,
               source: Optional[str] = None,
               limit: int = Query(5, ge=1, le=25)):
        title = title or name
        if not title:
            return error_response(400, 'Missing parameter', 'Missing title parameter')

        def run():
            return {'results': service.search(title, source=source, limit=limit)}

        return handle_errors(run)

    @app.get('/manga')
    def manga(request: Request,
              title: Optional[str] = None,
              name: Optional[str] = None,
              chapter: Optional[str] = None,
              chapters: Optional[str] = None,
              source: Optional[str] = None,
              quality: str = 'high',
              language: Optional[str] = None,
              format: str = 'json'):
        title = title or name
        chapter = chapter or chapters
        if not title or not chapter:
            return error_response(400, 'Missing parameter', 'Missing title or chapter parameter')

        def run():
            manga_data = service.fetch_manga(
                title,
                chapter,
                source=source,
                quality=quality,
                language=language,
                base_url=base_url_for(request),
            )
            if format.lower() == 'xml':
                return Response(content=manga_data_to_xml(manga_data), media_type='application/xml')
            return manga_data

        return handle_errors(run)

    return app


app = create_app()


if __name__ == '__main__':
    logger.info(f"Server running on port {settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)
