# tests/test_photos_api.py
import asyncio

from PIL import Image

from aquaforum.core import middleware
from aquaforum.core.middleware import status_for
from aquaforum.models import Photo, Tag
from aquaforum.services.errors import LLMRequestError, MediaUploadError
from tests.helpers import jpeg_bytes

OWNER = {"X-User-Id": "u1"}
OTHER = {"X-User-Id": "u2"}
ADMIN = {"X-User-Id": "mod", "X-User-Role": "admin"}


async def upload(client, headers=OWNER, **form):
    data = {"title": "Planted 60L", "category": "Planted", "tags": "Betta, plants"}
    data.update(form)
    files = {"image": ("tank.jpg", jpeg_bytes((1600, 1200)), "image/jpeg")}
    return await client.post("/photos/upload", data=data, files=files, headers=headers)


async def wait_for_tagging(client, photo_id, headers=OWNER, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        body = (await client.get(f"/photos/{photo_id}/tagging", headers=headers)).json()
        if body["status"] in ("completed", "failed"):
            return body
        assert asyncio.get_running_loop().time() < deadline, f"tagging still {body['status']}"
        await asyncio.sleep(0.05)


async def test_upload_tags_photo_in_background(client, fake_llm):
    fake_llm.content = '{"tags":[{"tag":"betta","confidence":0.95},{"tag":"driftwood","confidence":0.8}]}'

    r = await upload(client)
    assert r.status_code == 201, r.text
    body = r.json()
    photo = body["photo"]
    assert photo["vision_status"] == "pending"
    assert photo["tags"] == ["Betta", "plants"]
    assert photo["provider"] == "local"
    assert photo["image_url"].startswith("/uploads/images/u1/")
    assert body["tagging_queued"] is True
    assert body["job_id"] == f"vision-{photo['id']}"

    status = await wait_for_tagging(client, photo["id"])
    assert status["status"] == "completed"
    assert status["model"] == "llava-1.5-7b-4096"
    assert [t["tag"] for t in status["vision_tags"]] == ["betta", "driftwood"]
    assert status["tags"] == ["Betta", "plants", "driftwood"]

    # the stored file was resized before upload
    stored = await Photo.get(id=photo["id"])
    with Image.open(stored.metadata["path"]) as im:
        assert im.size == (1024, 768)

    tags = (await client.get("/tags/popular")).json()
    assert {"name": "betta", "usage_count": 1} in tags


async def test_upload_without_auto_tagging_stays_pending(client, fake_llm):
    r = await upload(client, enable_auto_tagging="false", tags="")
    assert r.status_code == 201
    assert r.json()["tagging_queued"] is False
    await asyncio.sleep(0.05)
    status = (await client.get(f"/photos/{r.json()['photo']['id']}/tagging", headers=OWNER)).json()
    assert status["status"] == "pending"
    assert "/v1/chat/completions" not in fake_llm.paths()


async def test_upload_requires_identity(client):
    r = await upload(client, headers={})
    assert r.status_code == 401


async def test_upload_rejects_non_images(client):
    files = {"image": ("notes.txt", b"hello", "text/plain")}
    r = await client.post("/photos/upload", data={"title": "x"}, files=files, headers=OWNER)
    assert r.status_code == 400

    files = {"image": ("fake.jpg", b"hello", "image/jpeg")}
    r = await client.post("/photos/upload", data={"title": "x"}, files=files, headers=OWNER)
    assert r.status_code == 400
    assert r.json()["detail"] == "File signature mismatch"


async def test_upload_rejects_blank_title(client):
    r = await upload(client, title="   ")
    assert r.status_code == 422
    assert await Photo.all().count() == 0


async def test_failed_tagging_is_reported(client, fake_llm):
    fake_llm.unreachable = True
    r = await upload(client, tags="")
    status = await wait_for_tagging(client, r.json()["photo"]["id"])
    assert status["status"] == "failed"
    assert status["error"] == "Vision LLM not available"
    assert status["tags"] == []


async def test_get_photo_counts_views_and_hides_private(client, services):
    photo = await services.store.create(user_id="u1", image_url="/uploads/images/u1/a.jpg", title="Mine", is_public=False)

    assert (await client.get(f"/photos/{photo.id}")).status_code == 404
    assert (await client.get(f"/photos/{photo.id}", headers=OTHER)).status_code == 404
    r = await client.get(f"/photos/{photo.id}", headers=OWNER)
    assert r.status_code == 200
    assert r.json()["views"] == 1
    assert r.json()["variants"]["thumbnail"] == "/uploads/images/u1/a.jpg"
    assert (await client.get(f"/photos/{photo.id}", headers=ADMIN)).json()["views"] == 2


async def test_list_photos_filters_visibility(client, services):
    await services.store.create(user_id="u1", image_url="/a.jpg", title="public")
    await services.store.create(user_id="u1", image_url="/b.jpg", title="private", is_public=False)
    await services.store.create(user_id="u2", image_url="/c.jpg", title="other")

    anon = await client.get("/photos")
    assert anon.headers["X-Total-Count"] == "2"
    assert {p["title"] for p in anon.json()} == {"public", "other"}

    mine = await client.get("/photos", params={"user_id": "u1"}, headers=OWNER)
    assert {p["title"] for p in mine.json()} == {"public", "private"}

    paged = await client.get("/photos", params={"limit": 1, "page": 2}, headers=ADMIN)
    assert paged.headers["X-Total-Count"] == "3"
    assert paged.headers["X-Total-Pages"] == "3"
    assert len(paged.json()) == 1


async def test_update_photo_owner_only(client, services):
    photo = await services.store.create(user_id="u1", image_url="/a.jpg", title="Old", tags=["guppy"])

    r = await client.put(f"/photos/{photo.id}", json={"title": "New"}, headers=OTHER)
    assert r.status_code == 403

    r = await client.put(f"/photos/{photo.id}", json={"title": "New", "tags": ["Molly", "molly"]}, headers=OWNER)
    assert r.status_code == 200
    assert r.json()["title"] == "New"
    assert r.json()["tags"] == ["Molly"]
    assert (await Tag.get(name="guppy")).usage_count == 0
    assert (await Tag.get(name="molly")).usage_count == 1


async def test_update_rejects_null_and_blank_fields(client, services):
    photo = await services.store.create(user_id="u1", image_url="/a.jpg", title="Old")

    for body in ({"title": None}, {"category": None}, {"is_public": None}, {"title": "  "}):
        r = await client.put(f"/photos/{photo.id}", json=body, headers=OWNER)
        assert r.status_code == 422, body

    r = await client.put(f"/photos/{photo.id}", json={"title": "  Shrimp tank  ", "tags": None}, headers=OWNER)
    assert r.status_code == 200
    assert r.json()["title"] == "Shrimp tank"
    assert (await Photo.get(id=photo.id)).title == "Shrimp tank"


async def test_delete_with_missing_storage_object(client, services):
    photo = await services.store.create(
        user_id="u1", image_url="/uploads/images/u1/already-gone.jpg", title="Gone", tags=["betta"]
    )

    assert (await client.delete(f"/photos/{photo.id}", headers=OTHER)).status_code == 403
    r = await client.delete(f"/photos/{photo.id}", headers=OWNER)

    assert r.status_code == 200
    body = r.json()
    assert body["deleted"] is True
    assert body["storage"]["success"] is True
    assert body["storage"]["outcome"] == "not_found"
    assert (await client.get(f"/photos/{photo.id}", headers=OWNER)).status_code == 404
    assert (await Tag.get(name="betta")).usage_count == 0


async def test_admin_can_delete_any_photo(client, services):
    photo = await services.store.create(user_id="u1", image_url="/uploads/images/u1/x.jpg", title="x")
    r = await client.delete(f"/photos/{photo.id}", headers=ADMIN)
    assert r.status_code == 200


async def test_like_toggle(client, services):
    photo = await services.store.create(user_id="u1", image_url="/a.jpg", title="x")
    assert (await client.post(f"/photos/{photo.id}/like")).status_code == 401
    r = await client.post(f"/photos/{photo.id}/like", headers=OTHER)
    assert r.json() == {"liked": True, "likes_count": 1}
    r = await client.post(f"/photos/{photo.id}/like", headers=OTHER)
    assert r.json() == {"liked": False, "likes_count": 0}


async def test_unknown_photo_is_404(client):
    r = await client.get("/photos/00000000-0000-0000-0000-000000000000/tagging")
    assert r.status_code == 404


async def test_tag_listing_and_suggestions(client, services):
    await services.store.create(user_id="u1", image_url="/a.jpg", title="x", tags=["betta", "bettas", "guppy"])
    await services.store.create(user_id="u2", image_url="/b.jpg", title="y", tags=["Betta"])

    page = (await client.get("/tags", params={"limit": 2})).json()
    assert page["total"] == 3
    assert page["pages"] == 2
    assert page["tags"][0] == {"name": "betta", "usage_count": 2}

    suggestions = (await client.get("/tags/suggestions", params={"q": "bet"})).json()
    assert [t["name"] for t in suggestions] == ["betta", "bettas"]
    assert (await client.get("/tags/suggestions", params={"q": "b"})).json() == []


async def test_generate_tags_from_text(client, fake_llm):
    fake_llm.content = '{"tags": ["Betta", "nano tank"]}'
    r = await client.post(
        "/tags/generate",
        json={"title": "My first betta", "content": "A 20L planted nano tank"},
        headers=OWNER,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert [t["tag"] for t in body["tags"]] == ["betta", "nano tank"]
    assert body["tags"][0]["source"] == "text-llm"


async def test_admin_tag_delete(client, services):
    photo = await services.store.create(user_id="u1", image_url="/a.jpg", title="x", tags=["algae", "betta"])

    assert (await client.delete("/admin/tags/algae", headers=OWNER)).status_code == 403
    r = await client.delete("/admin/tags/ALGAE", headers=ADMIN)
    assert r.status_code == 200
    assert r.json() == {"deleted": "algae", "photos_updated": 1}
    assert await services.store.tag_names(photo.id) == ["betta"]
    assert (await client.delete("/admin/tags/algae", headers=ADMIN)).status_code == 404


async def test_admin_queue_cleanup(client):
    r = await client.post("/admin/queue/cleanup", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["stats"]["total"] == 0


async def test_ops_endpoints(client):
    assert (await client.get("/health")).json()["status"] == "healthy"
    assert (await client.get("/ops/db-health")).json() == {"db_ok": True}

    queue = (await client.get("/ops/queue")).json()
    assert queue["backend"] == "inline"

    vision = (await client.get("/ops/vision-health")).json()
    assert vision["vision"]["healthy"] is True

    media = (await client.get("/ops/media-health")).json()
    assert media == {"available": True, "provider": "local"}

    runtime = (await client.get("/ops/runtime")).json()
    assert runtime["process_id"] > 0


async def test_security_headers_and_request_id(client):
    r = await client.get("/health", headers={"x-request-id": "abc123"})
    assert r.headers["x-request-id"] == "abc123"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert "default-src 'self'" in r.headers["Content-Security-Policy"]


def test_pipeline_errors_map_to_gateway_statuses():
    assert status_for(MediaUploadError("cdn down")) == 502
    assert status_for(LLMRequestError("model crashed")) == 503
    assert status_for(KeyError("x")) == 500


def test_csp_allows_configured_media_host(monkeypatch):
    monkeypatch.setattr(middleware.settings, "MEDIA_SERVICE_PROVIDER", "cloudinary")
    assert "https://res.cloudinary.com" in middleware.content_security_policy("/photos")
    assert "cdn.jsdelivr.net" in middleware.content_security_policy("/docs")
