"""Tests for artifact download, verification and the content-addressed store."""
import dataclasses
import hashlib
from unittest.mock import Mock, patch

import pytest
import requests

from artifacts import ArtifactFetcher, ArtifactStore
from common.errors import DownloadError, IntegrityError, NetworkError
from common.http_client import open_stream
from conftest import wheel_descriptor

PAYLOAD = b"wheel-bytes" * 1000


def _descriptor(payload=PAYLOAD, **kwargs):
    return wheel_descriptor("demo", "1.0", digest="sha256:" + hashlib.sha256(payload).hexdigest(), **kwargs)


def _stream(payload=PAYLOAD, fail_after=None):
    resp = Mock()

    def iter_content(chunk_size):
        for i in range(0, len(payload), chunk_size):
            if fail_after is not None and i >= fail_after:
                raise requests.ConnectionError("reset by peer")
            yield payload[i:i + chunk_size]

    resp.iter_content.side_effect = iter_content
    return resp


class TestArtifactStore:
    """Layout and verification of stored artifacts."""

    def test_path_is_content_addressed(self, tmp_path):
        store = ArtifactStore(tmp_path)
        descriptor = _descriptor()
        hexdigest = descriptor.hexdigest
        assert store.path_for(descriptor) == tmp_path / "artifacts" / hexdigest[:2] / hexdigest / descriptor.filename

    def test_insert_and_lookup(self, tmp_path):
        store = ArtifactStore(tmp_path)
        descriptor = _descriptor()
        src = tmp_path / "download.part"
        src.write_bytes(PAYLOAD)
        stored = store.insert(descriptor, src)
        assert stored.read_bytes() == PAYLOAD
        assert not src.exists()
        assert store.lookup(descriptor) == stored

    def test_insert_is_idempotent(self, tmp_path):
        store = ArtifactStore(tmp_path)
        descriptor = _descriptor()
        first = tmp_path / "one.part"
        first.write_bytes(PAYLOAD)
        second = tmp_path / "two.part"
        second.write_bytes(PAYLOAD)
        assert store.insert(descriptor, first) == store.insert(descriptor, second)
        assert not second.exists()

    def test_corrupt_entry_evicted(self, tmp_path):
        store = ArtifactStore(tmp_path)
        descriptor = _descriptor()
        path = store.path_for(descriptor)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"tampered")
        assert store.lookup(descriptor) is None
        assert not path.exists()


class TestArtifactFetcher:
    """Download with retries; digests are always enforced."""

    @patch("artifacts.fetcher.open_stream")
    def test_download_verified_and_stored(self, mock_open, tmp_path):
        mock_open.return_value = _stream()
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path))
        path = fetcher.fetch(_descriptor())
        assert path.read_bytes() == PAYLOAD
        assert path.parent.name == _descriptor().hexdigest
        mock_open.return_value.close.assert_called_once()

    @patch("artifacts.fetcher.open_stream")
    def test_cache_hit_skips_network(self, mock_open, tmp_path):
        mock_open.return_value = _stream()
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path))
        fetcher.fetch(_descriptor())
        fetcher.fetch(_descriptor())
        assert mock_open.call_count == 1

    @patch("artifacts.fetcher.time.sleep")
    @patch("artifacts.fetcher.open_stream")
    def test_integrity_error_not_retried(self, mock_open, mock_sleep, tmp_path):
        mock_open.return_value = _stream(payload=b"something else")
        store = ArtifactStore(tmp_path)
        fetcher = ArtifactFetcher(store, retries=3)
        with pytest.raises(IntegrityError):
            fetcher.fetch(_descriptor())
        assert mock_open.call_count == 1
        mock_sleep.assert_not_called()
        assert store.lookup(_descriptor()) is None
        assert list((tmp_path / "artifacts" / ".tmp").iterdir()) == []

    @patch("artifacts.fetcher.open_stream")
    def test_size_mismatch_is_integrity_error(self, mock_open, tmp_path):
        mock_open.return_value = _stream()
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path))
        descriptor = _descriptor()
        descriptor = dataclasses.replace(descriptor, size=len(PAYLOAD) + 1)
        with pytest.raises(IntegrityError):
            fetcher.fetch(descriptor)

    @patch("artifacts.fetcher.time.sleep")
    @patch("artifacts.fetcher.open_stream")
    def test_transport_failures_retried_with_backoff(self, mock_open, mock_sleep, tmp_path):
        mock_open.side_effect = [
            NetworkError("Connection error"),
            _stream(fail_after=0),
            _stream(),
        ]
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path), retries=3)
        path = fetcher.fetch(_descriptor())
        assert path.read_bytes() == PAYLOAD
        assert mock_open.call_count == 3
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert len(delays) == 2
        assert delays[1] > delays[0]

    @patch("artifacts.fetcher.time.sleep")
    @patch("artifacts.fetcher.open_stream")
    def test_gives_up_after_retries(self, mock_open, _sleep, tmp_path):
        mock_open.side_effect = NetworkError("Connection error")
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path), retries=2)
        with pytest.raises(DownloadError):
            fetcher.fetch(_descriptor())
        assert mock_open.call_count == 2

    @patch("artifacts.fetcher.time.sleep")
    @patch("artifacts.fetcher.open_stream")
    def test_client_error_not_retried(self, mock_open, mock_sleep, tmp_path):
        mock_open.side_effect = DownloadError("HTTP 404 for https://files.example.org/demo.whl")
        fetcher = ArtifactFetcher(ArtifactStore(tmp_path), retries=3)
        with pytest.raises(DownloadError) as exc_info:
            fetcher.fetch(_descriptor())
        assert "404" in str(exc_info.value)
        assert mock_open.call_count == 1
        mock_sleep.assert_not_called()

    @patch("artifacts.fetcher.time.sleep")
    @patch("artifacts.fetcher.open_stream")
    def test_filesystem_failure_is_download_error(self, mock_open, mock_sleep, tmp_path):
        store = ArtifactStore(tmp_path)
        fetcher = ArtifactFetcher(store, retries=3)
        with patch.object(store, "temp_file", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(DownloadError) as exc_info:
                fetcher.fetch(_descriptor())
        assert "No space left" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OSError)
        mock_open.assert_not_called()
        mock_sleep.assert_not_called()


class TestOpenStream:
    """Status handling for streamed downloads."""

    @patch("common.http_client.requests.get")
    def test_not_found_is_download_error(self, mock_get):
        mock_get.return_value = Mock(status_code=404)
        with pytest.raises(DownloadError):
            open_stream("https://files.example.org/demo.whl")
        mock_get.return_value.close.assert_called_once()

    @pytest.mark.parametrize("status", [429, 503])
    @patch("common.http_client.requests.get")
    def test_transient_status_is_retryable(self, mock_get, status):
        mock_get.return_value = Mock(status_code=status)
        with pytest.raises(NetworkError) as exc_info:
            open_stream("https://files.example.org/demo.whl")
        assert not isinstance(exc_info.value, DownloadError)

    @patch("common.http_client.requests.get")
    def test_ok_response_returned_open(self, mock_get):
        mock_get.return_value = Mock(status_code=200)
        assert open_stream("https://files.example.org/demo.whl") is mock_get.return_value
        mock_get.return_value.close.assert_not_called()
