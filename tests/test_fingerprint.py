from __future__ import annotations

from pathlib import Path

from runledger.fingerprint import fingerprint, is_supported_method


def test_identical_bytes_produce_identical_sha256_digest(tmp_path: Path) -> None:
    first = tmp_path / "a.txt"
    second = tmp_path / "b.txt"
    first.write_text("same content\n", encoding="utf-8")
    second.write_text("same content\n", encoding="utf-8")

    digest = fingerprint(first)

    assert digest.startswith("sha256:")
    assert digest == fingerprint(second)


def test_content_change_changes_digest(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    path.write_text("- [0] Session initialized.\n", encoding="utf-8")
    before = fingerprint(path)

    with path.open("a", encoding="utf-8") as handle:
        handle.write("- [1] did work\n")

    assert fingerprint(path) != before


def test_missing_file_fingerprints_as_absent(tmp_path: Path) -> None:
    assert fingerprint(tmp_path / "missing.md") == "absent"


def test_mtime_size_method_uses_stat(tmp_path: Path) -> None:
    path = tmp_path / "plan.md"
    path.write_text("12345", encoding="utf-8")

    digest = fingerprint(path, method="mtime_size")

    assert digest.startswith("mtime_size:")
    assert digest.endswith(":5")


def test_unavailable_algorithm_falls_back_to_mtime_size(tmp_path: Path) -> None:
    path = tmp_path / "plan.md"
    path.write_text("x", encoding="utf-8")

    assert fingerprint(path, method="not-a-hash").startswith("mtime_size:")


def test_other_hashlib_algorithms_are_supported(tmp_path: Path) -> None:
    path = tmp_path / "plan.md"
    path.write_text("x", encoding="utf-8")

    assert fingerprint(path, method="md5").startswith("md5:")
    assert is_supported_method("sha256")
    assert is_supported_method("mtime_size")
    assert not is_supported_method("not-a-hash")
