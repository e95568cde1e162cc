"""Tests for request fingerprinting."""

from scrapecascade.schemas.request import RequestDescriptor
from scrapecascade.services.fingerprint import compute_cache_key, compute_dedup_key


class TestCacheKey:
    def test_same_request_same_key(self):
        a = RequestDescriptor(url="https://example.com/page", headers={"Accept": "text/html"})
        b = RequestDescriptor(url="https://example.com/page", headers={"Accept": "text/html"})
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_url_case_and_method_case_ignored(self):
        a = RequestDescriptor(url="https://Example.com/Page", method="get")
        b = RequestDescriptor(url="https://example.com/page", method="GET")
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_header_name_case_and_order_ignored(self):
        a = RequestDescriptor(
            url="https://example.com", headers={"Accept": "a", "User-Agent": "ua"}
        )
        b = RequestDescriptor(
            url="https://example.com", headers={"user-agent": "ua", "accept": "a"}
        )
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_insignificant_headers_ignored(self):
        a = RequestDescriptor(url="https://example.com", headers={"X-Trace-Id": "1"})
        b = RequestDescriptor(url="https://example.com", headers={"X-Trace-Id": "2"})
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_significant_header_changes_key(self):
        a = RequestDescriptor(url="https://example.com", headers={"Authorization": "Bearer a"})
        b = RequestDescriptor(url="https://example.com", headers={"Authorization": "Bearer b"})
        assert compute_cache_key(a) != compute_cache_key(b)

    def test_body_changes_key(self):
        a = RequestDescriptor(url="https://example.com", method="POST", body=b'{"q": 1}')
        b = RequestDescriptor(url="https://example.com", method="POST", body=b'{"q": 2}')
        assert compute_cache_key(a) != compute_cache_key(b)

    def test_method_changes_key(self):
        a = RequestDescriptor(url="https://example.com", method="GET")
        b = RequestDescriptor(url="https://example.com", method="POST")
        assert compute_cache_key(a) != compute_cache_key(b)

    def test_key_is_sha256_hex(self):
        key = compute_cache_key(RequestDescriptor(url="https://example.com"))
        assert len(key) == 64
        int(key, 16)


class TestDedupKey:
    def test_headers_ignored(self):
        a = RequestDescriptor(url="https://example.com", headers={"Authorization": "a"})
        b = RequestDescriptor(url="https://example.com", headers={"Authorization": "b"})
        assert compute_dedup_key(a) == compute_dedup_key(b)

    def test_body_and_method_matter(self):
        get = RequestDescriptor(url="https://example.com")
        post = RequestDescriptor(url="https://example.com", method="POST", body="x")
        assert compute_dedup_key(get) != compute_dedup_key(post)

    def test_dedup_and_cache_keys_differ(self):
        d = RequestDescriptor(url="https://example.com")
        assert compute_dedup_key(d) != compute_cache_key(d)
        assert len(compute_dedup_key(d)) == 32


class TestDescriptor:
    def test_protocol_added(self):
        assert RequestDescriptor(url="example.com").url == "https://example.com"

    def test_headers_copied(self):
        headers = {"Accept": "text/html"}
        d = RequestDescriptor(url="https://example.com", headers=headers)
        before = compute_cache_key(d)
        headers["Accept"] = "application/json"
        assert d.headers["Accept"] == "text/html"
        assert compute_cache_key(d) == before

    def test_str_body_encoded(self):
        assert RequestDescriptor(url="https://example.com", body="hé").body == "hé".encode()
