"""Tests for AppBundle."""

import plistlib
import pytest

from exceptions import SessionError
from services.app_bundle import AppBundle


def make_app(root, name="MyApp.app", app_id="com.example.myapp", executable="MyApp", fmt=plistlib.FMT_XML):
    app = root / name
    app.mkdir(parents=True)
    info = {"CFBundleIdentifier": app_id}
    if executable:
        info["CFBundleExecutable"] = executable
    with open(app / "Info.plist", "wb") as f:
        plistlib.dump(info, f, fmt=fmt)
    return app


class TestLoad:
    """Tests for reading app bundles."""

    def test_reads_info_plist(self, tmp_path):
        app = make_app(tmp_path)

        bundle = AppBundle.load(str(app))

        assert bundle.app_id == "com.example.myapp"
        assert bundle.app_name == "MyApp"
        assert bundle.watch_apps == []
        assert bundle.watch_app is None

    def test_binary_plist(self, tmp_path):
        app = make_app(tmp_path, fmt=plistlib.FMT_BINARY)
        assert AppBundle.load(str(app)).app_id == "com.example.myapp"

    def test_executable_defaults_to_bundle_name(self, tmp_path):
        app = make_app(tmp_path, name="Fallback.app", executable=None)
        assert AppBundle.load(str(app)).app_name == "Fallback"

    def test_finds_watch_app(self, tmp_path):
        app = make_app(tmp_path)
        make_app(app / "Watch", "MyWatch.app", "com.example.myapp.watchkitapp", "MyWatch")

        bundle = AppBundle.load(str(app))

        assert bundle.watch_app.app_id == "com.example.myapp.watchkitapp"
        assert bundle.watch_app.watch_apps == []

    def test_missing_path(self, tmp_path):
        with pytest.raises(SessionError, match="App path does not exist"):
            AppBundle.load(str(tmp_path / "Nope.app"))

    def test_missing_info_plist(self, tmp_path):
        (tmp_path / "Empty.app").mkdir()
        with pytest.raises(SessionError, match="Unable to find Info.plist"):
            AppBundle.load(str(tmp_path / "Empty.app"))

    def test_corrupt_info_plist(self, tmp_path):
        app = tmp_path / "Bad.app"
        app.mkdir()
        (app / "Info.plist").write_bytes(b"not a plist")
        with pytest.raises(SessionError, match="Failed to parse"):
            AppBundle.load(str(app))
