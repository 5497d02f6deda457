import io
from datetime import date

import httpx
import pytest
from PIL import Image

from image_resize.cache_store import ImageCacheStore
from image_resize.config import Settings
from image_resize.deps import build_services, create_session_factory, create_sqlite_engine
from image_resize.fetcher import ImageFetcher
from image_resize.referers import RefererTracker
from image_resize.retry import BackoffPolicy
from image_resize.store import Base, CACHE_TABLES, REFERER_TABLES


class InlineRunner:
    """Runs submitted work immediately, in the calling thread"""

    def __init__(self):
        self.submitted = []
        self.errors = []

    def submit(self, fn, *args, description=None, **kwargs):
        self.submitted.append(description or fn.__name__)
        try:
            fn(*args, **kwargs)
        except Exception as e:
            self.errors.append(e)

    def shutdown(self, wait=True):
        pass


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def make_image_bytes(fmt="PNG", size=(400, 300), color=(200, 40, 40), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, fmt)
    return buffer.getvalue()


def make_animated_gif(size=(60, 40), colors=((255, 0, 0), (0, 255, 0), (0, 0, 255))) -> bytes:
    frames = [Image.new("RGB", size, color) for color in colors]
    buffer = io.BytesIO()
    frames[0].save(buffer, "GIF", save_all=True, append_images=frames[1:], duration=80, loop=0)
    return buffer.getvalue()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def retry(fake_sleep):
    return BackoffPolicy(attempts=3, delay=0.05, sleep=fake_sleep)


@pytest.fixture
def runner():
    return InlineRunner()


@pytest.fixture
def cache_engine(tmp_path):
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'image_cache.db'}")
    Base.metadata.create_all(bind=engine, tables=CACHE_TABLES)
    yield engine
    engine.dispose()


@pytest.fixture
def referer_engine(tmp_path):
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'http_refers.db'}")
    Base.metadata.create_all(bind=engine, tables=REFERER_TABLES)
    yield engine
    engine.dispose()


@pytest.fixture
def cache_store(cache_engine, retry):
    return ImageCacheStore(cache_engine, create_session_factory(cache_engine), retry)


@pytest.fixture
def today():
    return date(2024, 5, 17)


@pytest.fixture
def referers(referer_engine, retry, today):
    return RefererTracker(create_session_factory(referer_engine), retry, today=lambda: today)


@pytest.fixture
def upstream():
    """Fake upstream server: maps URL path -> (status, content_type, body)"""
    routes = {
        "/photo.png": (200, "image/png", make_image_bytes("PNG")),
        "/photo.jpg": (200, "image/jpeg", make_image_bytes("JPEG")),
        "/anim.gif": (200, "image/gif", make_animated_gif()),
        "/logo.svg": (200, "image/svg+xml", b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"/>'),
        "/broken.png": (200, "image/png", b"definitely not an image"),
        "/empty.png": (200, "image/png", b""),
    }
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/unreachable.png":
            raise httpx.ConnectError("connection refused", request=request)
        status, content_type, body = routes.get(request.url.path, (404, "text/plain", b"not found"))
        return httpx.Response(status, headers={"content-type": content_type}, content=body)

    fetcher = ImageFetcher(timeout=5.0, transport=httpx.MockTransport(handler))
    fetcher.requests = requests
    yield fetcher
    fetcher.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=str(tmp_path / "data"), _env_file=None)


@pytest.fixture
def services(settings, upstream, runner):
    services = build_services(settings, fetcher=upstream, pool=runner)
    yield services
    services.close()
