import pytest

from unistore.common.errors import InvalidPathError, UnsupportedSchemeError
from unistore.domain.address import ResourceAddress, Scheme, normalize_key, resolve


class TestResolve:
    @pytest.mark.parametrize(
        "uri",
        [
            "s3://bucket/a/b.txt",
            "gcs://bucket/nested/deeper/file",
            "sftp://files.example.com/home/report.pdf",
            "ftp://ftp.example.com/pub/readme",
            "r2://media/images/logo.png",
            "local://scratch/notes.md",
        ],
    )
    def test_canonical_identifiers_round_trip(self, uri):
        assert str(resolve(uri)) == uri

    def test_components(self):
        address = resolve("s3://my-bucket/dir/file.bin")

        assert address == ResourceAddress(Scheme.S3, "my-bucket", "dir/file.bin")
        assert address.name == "file.bin"
        assert not address.is_prefix

    def test_scheme_is_case_insensitive(self):
        assert resolve("S3://bucket/k").scheme is Scheme.S3

    def test_dot_segments_and_duplicate_separators_collapse(self):
        assert resolve("s3://bucket//a/./b/../c").key == "a/c"

    def test_trailing_separator_marks_a_prefix(self):
        address = resolve("gcs://bucket/logs/")

        assert address.key == "logs/"
        assert address.is_prefix
        assert resolve("gcs://bucket").is_prefix

    def test_escape_above_root_is_rejected(self):
        with pytest.raises(InvalidPathError):
            resolve("s3://bucket/../../etc")

    def test_unknown_scheme(self):
        with pytest.raises(UnsupportedSchemeError) as excinfo:
            resolve("ftp2://host/file")
        assert excinfo.value.category == "address"

    def test_scheme_without_registered_adapter(self):
        with pytest.raises(UnsupportedSchemeError):
            resolve("gcs://bucket/k", schemes={Scheme.S3})

    @pytest.mark.parametrize("uri", ["bucket/key", "://bucket/key", "s3:///key", "s3://../key"])
    def test_malformed_identifiers(self, uri):
        with pytest.raises(InvalidPathError):
            resolve(uri)

    def test_nul_byte_rejected(self):
        with pytest.raises(InvalidPathError):
            normalize_key("a\x00b")

    def test_child_keeps_provider_keys_verbatim(self):
        base = resolve("s3://bucket/logs/")

        assert base.child("logs//2024/a.txt") == ResourceAddress(Scheme.S3, "bucket", "logs//2024/a.txt")
        assert base.child("logs/../odd").key == "logs/../odd"
