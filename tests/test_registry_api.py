"""Tests for docker/registry_api.py module."""

import httpx
import pytest
import respx

from buildcache.docker.registry_api import RegistryAPI
from buildcache.errors import RegistryAPIError

BASE = "http://registry.test:5000"
DIGEST = "sha256:" + "a" * 64


@pytest.fixture
def api():
    client = RegistryAPI(BASE)
    yield client
    client.close()


class TestListTags:
    """Tests for tag listing."""

    @respx.mock
    def test_list_tags(self, api):
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(
            return_value=httpx.Response(
                200, json={"name": "buildcache", "tags": ["latest", "cache-b", "cache-a"]}
            )
        )
        assert api.list_tags("buildcache") == ["latest", "cache-b", "cache-a"]

    @respx.mock
    def test_list_cache_tags(self, api):
        """Only cache tags are returned, sorted."""
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(
            return_value=httpx.Response(
                200, json={"name": "buildcache", "tags": ["latest", "cache-b", "cache-a"]}
            )
        )
        assert api.list_cache_tags("buildcache") == ["cache-a", "cache-b"]

    @respx.mock
    def test_unknown_repository(self, api):
        respx.get(f"{BASE}/v2/missing/tags/list").mock(return_value=httpx.Response(404))
        assert api.list_tags("missing") == []

    @respx.mock
    def test_null_tags(self, api):
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(
            return_value=httpx.Response(200, json={"name": "buildcache", "tags": None})
        )
        assert api.list_tags("buildcache") == []

    @respx.mock
    def test_server_error(self, api):
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(return_value=httpx.Response(500))
        with pytest.raises(RegistryAPIError) as exc_info:
            api.list_tags("buildcache")
        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_network_error(self, api):
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(
            side_effect=httpx.ConnectError("refused")
        )
        with pytest.raises(RegistryAPIError) as exc_info:
            api.list_tags("buildcache")
        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_timeout(self, api):
        respx.get(f"{BASE}/v2/buildcache/tags/list").mock(
            side_effect=httpx.ReadTimeout("slow")
        )
        with pytest.raises(RegistryAPIError) as exc_info:
            api.list_tags("buildcache")
        assert exc_info.value.code == "timeout"


class TestDeleteTag:
    """Tests for tag deletion."""

    @respx.mock
    def test_delete_resolves_digest(self, api):
        """Deletion goes through the manifest digest."""
        head = respx.head(f"{BASE}/v2/buildcache/manifests/cache-abc").mock(
            return_value=httpx.Response(200, headers={"Docker-Content-Digest": DIGEST})
        )
        delete = respx.delete(f"{BASE}/v2/buildcache/manifests/{DIGEST}").mock(
            return_value=httpx.Response(202)
        )

        assert api.delete_tag("buildcache", "cache-abc") is True
        assert head.called
        assert delete.called
        assert "manifest.v2+json" in head.calls.last.request.headers["Accept"]

    @respx.mock
    def test_delete_missing_tag(self, api):
        respx.head(f"{BASE}/v2/buildcache/manifests/cache-abc").mock(
            return_value=httpx.Response(404)
        )
        assert api.delete_tag("buildcache", "cache-abc") is False

    @respx.mock
    def test_delete_already_gone(self, api):
        respx.head(f"{BASE}/v2/buildcache/manifests/cache-abc").mock(
            return_value=httpx.Response(200, headers={"Docker-Content-Digest": DIGEST})
        )
        respx.delete(f"{BASE}/v2/buildcache/manifests/{DIGEST}").mock(
            return_value=httpx.Response(404)
        )
        assert api.delete_tag("buildcache", "cache-abc") is False

    @respx.mock
    def test_delete_disabled(self, api):
        """Registries without deletion enabled answer 405."""
        respx.head(f"{BASE}/v2/buildcache/manifests/cache-abc").mock(
            return_value=httpx.Response(200, headers={"Docker-Content-Digest": DIGEST})
        )
        respx.delete(f"{BASE}/v2/buildcache/manifests/{DIGEST}").mock(
            return_value=httpx.Response(405)
        )
        with pytest.raises(RegistryAPIError):
            api.delete_tag("buildcache", "cache-abc")

    @respx.mock
    def test_missing_digest_header(self, api):
        respx.head(f"{BASE}/v2/buildcache/manifests/cache-abc").mock(
            return_value=httpx.Response(200)
        )
        with pytest.raises(RegistryAPIError) as exc_info:
            api.get_digest("buildcache", "cache-abc")
        assert exc_info.value.code == "missing_digest"
