"""Client-side helpers: part planning, fingerprints, error mapping, CLI formatting."""

from reelvault.client.api import ReelVaultAPIError
from reelvault.client.cli import _normalise_server_url, format_size
from reelvault.client.uploader import plan_parts
from reelvault.common.constants import DEFAULT_SERVER_PORT, MAX_PART_NUMBER
from reelvault.common.fileutil import compute_fingerprint, file_extension, fingerprint_bytes, sanitize_name


def test_plan_parts_covers_file_exactly():
    parts = plan_parts(25, part_size=10)
    assert parts == [(1, 0, 10), (2, 10, 10), (3, 20, 5)]
    assert plan_parts(0, part_size=10) == []


def test_plan_parts_grows_part_size_past_limit():
    size = MAX_PART_NUMBER * 10 + 1
    parts = plan_parts(size, part_size=10)
    assert len(parts) <= MAX_PART_NUMBER
    assert sum(length for _, _, length in parts) == size


def test_fingerprint_of_file_matches_leading_bytes(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"abcdefgh")
    assert compute_fingerprint(path, chunk_size=4) == fingerprint_bytes(b"abcd", 8)
    # Same leading bytes, different size
    assert fingerprint_bytes(b"abcd", 8) != fingerprint_bytes(b"abcd", 9)


def test_name_helpers():
    assert file_extension("Movie.MOV") == "mov"
    assert file_extension("noext") == ""
    assert sanitize_name("my clip (1).mp4") == "my_clip__1_.mp4"


def test_api_error_flags():
    dup = ReelVaultAPIError(409, {"error": "duplicate_content", "message": "Duplicate content", "duplicate": True})
    assert dup.duplicate is True
    assert dup.retryable is False

    busy = ReelVaultAPIError(507, {"error": "quota_exceeded", "message": "busy", "retry": True})
    assert busy.retryable is True

    plain = ReelVaultAPIError(403, {"detail": "Admin access required"})
    assert plain.error == "http_error"
    assert plain.message == "Admin access required"


def test_normalise_server_url():
    assert _normalise_server_url("vault.local") == f"http://vault.local:{DEFAULT_SERVER_PORT}"
    assert _normalise_server_url("10.0.0.2:9000") == "http://10.0.0.2:9000"
    assert _normalise_server_url("https://vault.example.com/") == "https://vault.example.com"


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(1536) == "1.5 KB"
