"""Tests for object key generation and upload metadata."""

from datetime import datetime, timezone

from filerelay.pipeline.keys import (
    MAX_KEY_LENGTH,
    MAX_NAME_LENGTH,
    OBJECT_KEY_PATTERN,
    build_metadata,
    generate_object_key,
    random_token,
    sanitize_filename,
)


class TestSanitizeFilename:
    """Tests for filename sanitization."""

    def test_valid_characters_preserved(self):
        assert sanitize_filename("valid-file_name.123.txt") == "valid-file_name.123.txt"

    def test_unsafe_characters_replaced(self):
        result = sanitize_filename("my report (final)#2.pdf")
        assert result == "my_report__final__2.pdf"

    def test_path_separators_replaced(self):
        result = sanitize_filename("../../etc/passwd")
        assert "/" not in result
        assert result == ".._.._etc_passwd"
        assert "\\" not in sanitize_filename("..\\windows\\system32")

    def test_non_ascii_replaced(self):
        assert sanitize_filename("résumé.pdf") == "r_sum_.pdf"

    def test_missing_name_defaults_to_file(self):
        assert sanitize_filename(None) == "file"
        assert sanitize_filename("") == "file"

    def test_long_name_truncated(self):
        result = sanitize_filename("a" * 500 + ".txt")
        assert len(result) == MAX_NAME_LENGTH


class TestGenerateObjectKey:
    """Tests for storage key generation."""

    def test_key_layout(self):
        now = datetime(2024, 5, 17, 12, 0, 0, tzinfo=timezone.utc)
        key = generate_object_key("report.pdf", now=now, token="k3j9x0ab")

        assert key == f"uploads/2024/05/17/{int(now.timestamp() * 1000)}-k3j9x0ab-report.pdf"
        assert OBJECT_KEY_PATTERN.match(key)

    def test_naive_datetime_treated_as_utc(self):
        key = generate_object_key("a.txt", now=datetime(2023, 1, 2, 3, 4, 5), token="abcdefgh")
        assert key.startswith("uploads/2023/01/02/")

    def test_date_partition_uses_utc(self):
        from datetime import timedelta

        # 23:30 at UTC-5 is already the next day in UTC
        local = datetime(2024, 12, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        key = generate_object_key("a.txt", now=local, token="abcdefgh")
        assert key.startswith("uploads/2025/01/01/")

    def test_keys_are_unique(self):
        keys = {generate_object_key("same.txt") for _ in range(200)}
        assert len(keys) == 200

    def test_hostile_filename_produces_safe_key(self):
        key = generate_object_key("../../../etc/passwd\x00; rm -rf /")
        assert OBJECT_KEY_PATTERN.match(key)
        assert key.count("/") == 4

    def test_key_length_bounded(self):
        key = generate_object_key("x" * 1000)
        assert len(key) <= MAX_KEY_LENGTH
        assert OBJECT_KEY_PATTERN.match(key)

    def test_random_token_alphabet(self):
        token = random_token()
        assert len(token) == 8
        assert token.isalnum()
        assert token == token.lower()


class TestBuildMetadata:
    """Tests for upload metadata assembly."""

    def test_metadata_values(self):
        metadata = build_metadata("web-client", "photo.png")
        assert metadata == {"uploaded-by": "web-client", "original-name": "photo.png"}

    def test_defaults_when_missing(self):
        metadata = build_metadata(None, None)
        assert metadata == {"uploaded-by": "unknown", "original-name": "file"}

    def test_values_truncated(self):
        metadata = build_metadata("c" * 100, "n" * 300)
        assert len(metadata["uploaded-by"]) == 64
        assert len(metadata["original-name"]) == 128

    def test_non_printable_replaced(self):
        metadata = build_metadata("bad\r\nheader", "naïve.txt")
        assert metadata["uploaded-by"] == "bad__header"
        assert metadata["original-name"] == "na_ve.txt"
