import pytest
from fastapi.testclient import TestClient

from conftest import seed_links
from linkcapture.errors import MetadataFetchError
from linkcapture.main import create_app
from linkcapture.models import LinkMetadata
from linkcapture.storage import JsonLinkStore


class Pages:
    """Fetcher double: fails for URLs listed in `down` until they are removed."""

    def __init__(self):
        self.down = set()

    async def fetch(self, url):
        if url in self.down:
            raise MetadataFetchError("Unable to connect")
        return LinkMetadata(title=f"Title of {url}", domain="example.com")


@pytest.fixture
def store():
    store = JsonLinkStore(path=None)
    store.config.retry_debounce_seconds = 0
    store.config.retry_interval_seconds = 0
    return store


@pytest.fixture
def pages():
    return Pages()


@pytest.fixture
def client(store, pages):
    with TestClient(create_app(store=store, fetcher=pages.fetch)) as c:
        yield c


def test_create_and_list(client: TestClient):
    r = client.post("/api/links", json={"url": "https://www.example.com/a/?utm_source=x", "note": "hi"})
    assert r.status_code == 200
    link = r.json()["link"]
    assert link["normalized_url"] == "https://example.com/a"
    assert link["note"] == "hi"

    r = client.get("/api/links")
    assert r.status_code == 200
    data = r.json()
    assert [l["id"] for l in data["links"]] == [link["id"]]
    assert data["cursor"]["exhausted"]


def test_duplicate_is_409(client: TestClient):
    client.get("/api/links")
    client.post("/api/links", json={"url": "https://example.com/a"})
    r = client.post("/api/links", json={"url": "https://EXAMPLE.com/a#x"})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "DuplicateError"
    assert body["detail"] == "You've already saved this link"
    assert body["suggestion"]


def test_invalid_url_is_400(client: TestClient):
    r = client.post("/api/links", json={"url": "nope"})
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_update_open_and_delete(client: TestClient):
    client.get("/api/links")
    link_id = client.post("/api/links", json={"url": "https://example.com/a"}).json()["link"]["id"]

    r = client.patch(f"/api/links/{link_id}", json={"note": "later"})
    assert r.status_code == 200
    assert r.json()["link"]["note"] == "later"

    r = client.patch(f"/api/links/{link_id}", json={"note": "x" * 201})
    assert r.status_code == 400

    r = client.post(f"/api/links/{link_id}/open")
    assert r.json()["link"]["opened_at"] is not None

    assert client.delete(f"/api/links/{link_id}").json() == {"ok": True}
    assert client.get("/api/links").json()["links"] == []
    assert client.delete(f"/api/links/{link_id}").status_code == 404


def test_missing_space_is_409(client: TestClient):
    client.get("/api/links")
    link_id = client.post("/api/links", json={"url": "https://example.com/a"}).json()["link"]["id"]
    r = client.patch(f"/api/links/{link_id}", json={"space_id": "gone"})
    assert r.status_code == 409
    assert r.json()["error"] == "ConflictError"


def test_pagination(client: TestClient, store):
    seed_links(store, 35, owner_id="local")

    data = client.get("/api/links").json()
    assert len(data["links"]) == 30
    assert not data["cursor"]["exhausted"]
    assert data["has_more"]

    data = client.post("/api/links/next-page").json()
    assert len(data["added"]) == 5
    assert len(data["links"]) == 35
    assert data["cursor"]["exhausted"]
    assert not data["has_more"]

    data = client.post("/api/links/refresh").json()
    assert len(data["links"]) == 30


def test_search(client: TestClient, store):
    seed_links(store, 3, owner_id="local")
    tag = client.post("/api/tags", json={"name": "Weekend"}).json()["tag"]
    client.get("/api/links")
    client.patch("/api/links/link-001", json={"tag_ids": [tag["id"]]})

    r = client.get("/api/search", params={"q": "weekend"})
    assert r.json()["count"] == 1
    assert r.json()["results"][0]["id"] == "link-001"

    assert client.get("/api/search", params={"q": "item"}).json()["count"] == 3


def test_owner_header_scopes_links(client: TestClient):
    client.post("/api/links", json={"url": "https://example.com/a"}, headers={"X-Owner-Id": "alice"})

    assert client.get("/api/links", headers={"X-Owner-Id": "bob"}).json()["links"] == []
    assert len(client.get("/api/links", headers={"X-Owner-Id": "alice"}).json()["links"]) == 1


def test_cold_start_share_opens_save_flow_once(client: TestClient):
    r = client.post("/api/share", json={"text": "Look at https://example.com/shared."})
    assert r.json() == {"ok": True, "pending": "https://example.com/shared"}

    flow = client.get("/api/save-flow").json()["flow"]
    assert flow["step"] == "success"
    assert flow["prefilled"]
    assert flow["link"]["normalized_url"] == "https://example.com/shared"

    # the screen asks again, nothing new is saved
    again = client.get("/api/save-flow").json()["flow"]
    assert again["link"]["id"] == flow["link"]["id"]
    assert len(client.get("/api/links").json()["links"]) == 1


def test_warm_start_deep_link(client: TestClient):
    client.get("/api/links")
    r = client.get("/share", params={"url": "https://example.com/deep"})
    assert r.status_code == 200

    flow = client.get("/api/save-flow").json()["flow"]
    assert flow["link"]["url"] == "https://example.com/deep"


def test_share_without_url_is_400(client: TestClient):
    assert client.post("/api/share", json={"text": "no link"}).status_code == 400


def test_save_flow_details(client: TestClient):
    space = client.post("/api/spaces", json={"name": "Reading"}).json()["space"]
    client.post("/api/share", json={"text": "https://example.com/shared"})
    client.get("/api/save-flow")

    r = client.post("/api/save-flow/details", json={"note": "tonight", "space_id": space["id"]})
    flow = r.json()["flow"]
    assert flow["step"] == "success"
    assert flow["link"]["note"] == "tonight"
    assert flow["link"]["space_id"] == space["id"]


def test_save_flow_details_without_flow(client: TestClient):
    assert client.post("/api/save-flow/details", json={"note": "x"}).status_code == 404


def test_resume_retries_failed_metadata(client: TestClient, pages):
    pages.down.add("https://example.com/offline")
    client.get("/api/links")
    link_id = client.post("/api/links", json={"url": "https://example.com/offline"}).json()["link"]["id"]

    link = client.get("/api/links").json()["links"][0]
    assert link["title"] == "example.com"

    pages.down.clear()
    client.post("/api/lifecycle/paused")
    r = client.post("/api/lifecycle/resumed")
    assert r.json()["state"] == "resumed"

    link = client.get("/api/links").json()["links"][0]
    assert link["id"] == link_id
    assert link["title"] == "Title of https://example.com/offline"
    assert link["metadata_phase"] == "complete"


def test_manual_metadata_refresh(client: TestClient, pages):
    pages.down.add("https://example.com/a")
    client.get("/api/links")
    link_id = client.post("/api/links", json={"url": "https://example.com/a"}).json()["link"]["id"]
    client.get("/api/links")

    pages.down.clear()
    r = client.post(f"/api/links/{link_id}/metadata")
    assert r.status_code == 200
    assert r.json()["phase"] == "complete"
    assert r.json()["link"]["metadata"]["attempts"] == 1

    assert client.post("/api/links/unknown/metadata").status_code == 404


def test_unknown_lifecycle_state(client: TestClient):
    assert client.post("/api/lifecycle/sleeping").status_code == 422


def test_config_roundtrip(client: TestClient):
    r = client.post("/api/config", json={"page_size": 10, "metadata_max_attempts": 5})
    assert r.json()["page_size"] == 10
    assert client.get("/api/config").json()["metadata_max_attempts"] == 5


@pytest.mark.parametrize(
    "payload",
    [{"page_size": 0}, {"page_size": -5}, {"retry_batch_size": 0}, {"metadata_max_attempts": 0}],
)
def test_config_rejects_non_positive_counts(client: TestClient, payload):
    assert client.post("/api/config", json=payload).status_code == 422
    assert client.get("/api/config").json()["page_size"] == 30


def test_config_page_size_applies_on_refresh(client: TestClient, store):
    seed_links(store, 15, owner_id="local")
    client.get("/api/links")
    client.post("/api/config", json={"page_size": 10})

    data = client.post("/api/links/refresh").json()
    assert len(data["links"]) == 10


def test_spaces(client: TestClient):
    space = client.post("/api/spaces", json={"name": "Work"}).json()["space"]
    client.get("/api/links")
    client.post("/api/links", json={"url": "https://example.com/a", "space_id": space["id"]})

    spaces = client.get("/api/spaces").json()["spaces"]
    assert spaces[0]["link_count"] == 1

    assert client.delete(f"/api/spaces/{space['id']}").json() == {"ok": True}
    assert client.get("/api/spaces").json()["spaces"] == []
    assert client.get("/api/links").json()["links"][0]["space_id"] is None
    assert client.delete(f"/api/spaces/{space['id']}").status_code == 404


def test_blank_names_rejected(client: TestClient):
    assert client.post("/api/spaces", json={"name": "  "}).status_code == 400
    assert client.post("/api/tags", json={"name": ""}).status_code == 400
