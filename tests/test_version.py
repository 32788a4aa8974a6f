from importlib.metadata import PackageNotFoundError
from pathlib import Path

import pytest


def _hide_version_file(monkeypatch):
    orig_exists = Path.exists

    def fake_exists(self):  # type: ignore[no-redef]
        return False if self.name == "VERSION" else orig_exists(self)

    monkeypatch.setattr(Path, "exists", fake_exists, raising=False)


def test_get_version_reads_version_file():
    from streamrelay import _version as ver

    vfile = Path(ver.__file__).resolve().parents[1] / "VERSION"
    if not vfile.exists():
        pytest.skip("not running from a source checkout")
    expected = vfile.read_text().strip()
    assert ver.get_version() == expected


def test_get_version_uses_package_metadata(monkeypatch):
    _hide_version_file(monkeypatch)

    # Patch importlib.metadata.version to return a known value
    import importlib.metadata as im

    monkeypatch.setattr(im, "version", lambda name: "9.9.9")

    from streamrelay import _version as ver

    assert ver.get_version() == "9.9.9"


def test_get_version_fallback_to_default(monkeypatch):
    _hide_version_file(monkeypatch)

    import importlib.metadata as im

    def raise_err(_):
        raise PackageNotFoundError("streamrelay")

    monkeypatch.setattr(im, "version", raise_err)

    from streamrelay import _version as ver

    assert ver.get_version() == "0.0.0"
