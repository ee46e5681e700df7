# tests/test_media_providers.py
import aiohttp
import cloudinary.exceptions
import cloudinary.uploader
import pytest

from aquaforum.services.cloudinary_storage import CloudinaryProvider, public_id_from_url
from aquaforum.services.errors import MediaUploadError
from aquaforum.services.media import MediaService, build_media_service, get_provider
from aquaforum.services.results import DeleteOutcome
from aquaforum.services.shortpixel_storage import ShortPixelProvider
from aquaforum.services.storage import LocalStorage
from tests.helpers import make_settings

CLOUDINARY_URL = "https://res.cloudinary.com/demo/image/upload/v1712345/aqua-forum/u1/reef.jpg"
SHORTPIXEL_URL = "https://cdn.shortpixel.ai/client/lx1abc.jpg"


@pytest.fixture
def local(tmp_path):
    return LocalStorage(str(tmp_path / "uploads"))


# --- local ---

async def test_local_upload_and_delete(local, image_file):
    uploaded = await local.upload(str(image_file), user_id="Reef Keeper")
    assert uploaded.url.startswith("/uploads/images/reef-keeper/")
    assert uploaded.url.endswith(".jpg")
    assert uploaded.thumbnail_url == uploaded.url == uploaded.original_url
    assert uploaded.provider == "local"
    assert uploaded.metadata["size"] == image_file.stat().st_size
    assert local.path_for_url(uploaded.url).is_file()

    first = await local.delete(uploaded.url)
    assert first.outcome == DeleteOutcome.DELETED
    assert not local.path_for_url(uploaded.url).exists()

    second = await local.delete(uploaded.url)
    assert second.success and not second.deleted
    assert second.outcome == DeleteOutcome.NOT_FOUND


async def test_local_upload_without_user_goes_to_common(local, image_file):
    uploaded = await local.upload(str(image_file))
    assert uploaded.url.startswith("/uploads/images/common/")


async def test_local_delete_rejects_paths_outside_root(local):
    result = await local.delete("/uploads/../../etc/passwd")
    assert result.outcome == DeleteOutcome.INVALID_URL
    assert not result.success


def test_local_variants_are_identity(local):
    variants = local.get_image_variants("/uploads/images/u1/a.jpg")
    assert set(variants.to_dict().values()) == {"/uploads/images/u1/a.jpg"}


# --- facade ---

async def test_facade_routes_local_urls_to_local(local, image_file):
    media = MediaService(ShortPixelProvider("key", retry_delay=0), local)
    uploaded = await local.upload(str(image_file), user_id="u1")
    result = await media.delete(uploaded.url)
    assert result.provider == "local"
    assert result.deleted


async def test_facade_remote_url_without_remote_provider(local):
    media = MediaService(local, local)
    result = await media.delete(CLOUDINARY_URL)
    assert result.outcome == DeleteOutcome.UNSUPPORTED
    assert result.success


async def test_facade_never_raises(local):
    class Exploding(ShortPixelProvider):
        async def delete(self, url):
            raise RuntimeError("boom")

    media = MediaService(Exploding("key"), local)
    result = await media.delete(SHORTPIXEL_URL)
    assert result.outcome == DeleteOutcome.FAILED
    assert result.message == "boom"


def test_unknown_provider_falls_back_to_local(tmp_path, caplog):
    settings = make_settings(tmp_path, MEDIA_SERVICE_PROVIDER="imgur")
    service = build_media_service(settings)
    assert service.provider_name == "local"
    assert "Unknown media provider" in caplog.text


def test_provider_selection(tmp_path, local):
    assert get_provider(make_settings(tmp_path, MEDIA_SERVICE_PROVIDER="shortpixel"), local).name == "shortpixel"
    assert get_provider(make_settings(tmp_path, MEDIA_SERVICE_PROVIDER="Cloudinary"), local).name == "cloudinary"


# --- cloudinary ---

@pytest.fixture
def cloudinary_provider():
    return CloudinaryProvider("demo", "key", "secret", retry_delay=0)


def test_public_id_parsing():
    assert public_id_from_url(CLOUDINARY_URL) == "aqua-forum/u1/reef"
    assert public_id_from_url("https://example.com/no-version/x.jpg") is None


def test_cloudinary_variants(cloudinary_provider):
    variants = cloudinary_provider.get_image_variants(CLOUDINARY_URL)
    assert variants.original == CLOUDINARY_URL
    assert variants.thumbnail == (
        "https://res.cloudinary.com/demo/image/upload/w_200,h_200,c_fill,q_auto,f_auto/v1712345/aqua-forum/u1/reef.jpg"
    )
    assert "/upload/w_600,h_400,c_fill,q_auto,f_auto/" in variants.medium
    assert "/upload/w_1200,h_800,c_fill,q_auto,f_auto/" in variants.large


async def test_cloudinary_upload_retries_transient_errors(cloudinary_provider, image_file, monkeypatch):
    calls = []

    def flaky(file_path, options):
        calls.append(options)
        if len(calls) == 1:
            raise cloudinary.exceptions.GeneralError("connection reset")
        return {
            "public_id": "aqua-forum/u1/reef",
            "secure_url": CLOUDINARY_URL,
            "format": "jpg",
            "width": 800,
            "height": 600,
            "bytes": 1234,
        }

    monkeypatch.setattr(cloudinary_provider, "_upload_once", flaky)
    uploaded = await cloudinary_provider.upload(str(image_file), user_id="u1", title="Reef", tags=["coral"])

    assert len(calls) == 2
    assert calls[0]["folder"] == "aqua-forum/u1"
    assert calls[0]["tags"] == ["coral"]
    assert uploaded.url == CLOUDINARY_URL
    assert uploaded.metadata["public_id"] == "aqua-forum/u1/reef"
    assert "c_fill" in uploaded.thumbnail_url and "w_200" in uploaded.thumbnail_url


async def test_cloudinary_upload_gives_up(cloudinary_provider, image_file, monkeypatch):
    def down(file_path, options):
        raise cloudinary.exceptions.GeneralError("down")

    monkeypatch.setattr(cloudinary_provider, "_upload_once", down)
    with pytest.raises(MediaUploadError):
        await cloudinary_provider.upload(str(image_file))


@pytest.mark.parametrize(
    "api_result,outcome",
    [("ok", DeleteOutcome.DELETED), ("not found", DeleteOutcome.NOT_FOUND), ("error", DeleteOutcome.FAILED)],
)
async def test_cloudinary_delete_outcomes(cloudinary_provider, monkeypatch, api_result, outcome):
    destroyed = []

    def destroy(public_id):
        destroyed.append(public_id)
        return {"result": api_result}

    monkeypatch.setattr(cloudinary.uploader, "destroy", destroy)
    result = await cloudinary_provider.delete(CLOUDINARY_URL)
    assert destroyed == ["aqua-forum/u1/reef"]
    assert result.outcome == outcome


async def test_cloudinary_delete_invalid_url(cloudinary_provider):
    result = await cloudinary_provider.delete("https://res.cloudinary.com/demo/image/upload/reef.jpg")
    assert result.outcome == DeleteOutcome.INVALID_URL
    assert not result.success
    assert result.message == "Invalid Cloudinary URL"


async def test_cloudinary_ai_tags(cloudinary_provider, monkeypatch):
    monkeypatch.setattr(
        "cloudinary.api.resources_by_ids",
        lambda ids, **kw: {"resources": [{"public_id": ids[0], "tags": ["fish", "coral"]}]},
    )
    tags = await cloudinary_provider.get_ai_tags(CLOUDINARY_URL)
    assert [t.tag for t in tags] == ["fish", "coral"]
    assert {t.confidence for t in tags} == {0.85}
    assert all(t.auto_generated for t in tags)


async def test_unconfigured_cloudinary_refuses_upload(image_file):
    provider = CloudinaryProvider("", "", "")
    with pytest.raises(RuntimeError):
        await provider.upload(str(image_file))


# --- shortpixel ---

@pytest.fixture
def shortpixel():
    return ShortPixelProvider("key", retry_count=3, retry_delay=0, max_long_side=1024)


async def test_shortpixel_delete_is_unsupported(shortpixel):
    result = await shortpixel.delete(SHORTPIXEL_URL)
    assert result.outcome == DeleteOutcome.UNSUPPORTED
    assert result.success
    assert not result.deleted


def test_shortpixel_variants(shortpixel):
    variants = shortpixel.get_image_variants(SHORTPIXEL_URL)
    assert variants.thumbnail == "https://cdn.shortpixel.ai/client/w_200,h_200,c_fill,q_auto,f_auto/lx1abc.jpg"
    assert shortpixel.get_image_variants("https://example.com/a.jpg").medium == "https://example.com/a.jpg"


async def test_shortpixel_upload(shortpixel, image_file, monkeypatch):
    sent = []

    async def fake_send(method, endpoint, payload=None):
        sent.append((method, endpoint, payload))
        if len(sent) == 1:
            raise aiohttp.ClientConnectionError("reset")
        return {"success": True, "data": {"cdn_url": "https://cdn.shortpixel.ai/client", "optimized_size": 10}}

    monkeypatch.setattr(shortpixel, "_send", fake_send)
    uploaded = await shortpixel.upload(str(image_file), user_id="u1")

    assert len(sent) == 2
    method, endpoint, payload = sent[-1]
    assert (method, endpoint) == ("POST", "/optimize")
    assert payload["resize"] == {"width": 1024, "height": 1024, "strategy": "fit"}
    assert payload["convert_to"] == ["webp", "avif"]
    assert uploaded.url.startswith("https://cdn.shortpixel.ai/client/")
    stem = uploaded.url.rsplit("/", 1)[1].rsplit(".", 1)[0]
    assert uploaded.thumbnail_url.endswith(f"{stem}_thumb.jpg")
    assert uploaded.original_url.endswith(f"{stem}_original.jpg")
    assert uploaded.extra_urls == {
        "webp": f"https://cdn.shortpixel.ai/client/{stem}.webp",
        "avif": f"https://cdn.shortpixel.ai/client/{stem}.avif",
    }


async def test_shortpixel_rejected_upload(shortpixel, image_file, monkeypatch):
    async def rejected(method, endpoint, payload=None):
        return {"success": False, "message": "quota exceeded"}

    monkeypatch.setattr(shortpixel, "_send", rejected)
    with pytest.raises(MediaUploadError, match="quota exceeded"):
        await shortpixel.upload(str(image_file))
