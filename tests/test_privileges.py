"""Tests for imaging/privileges.py - raw device access checks."""

from diskimager.config import Settings
from diskimager.imaging.privileges import check_raw_device_access, has_admin_privileges


class TestCheckRawDeviceAccess:
    """Tests for check_raw_device_access."""

    def test_readable(self, tmp_path):
        """A readable node should be accessible."""
        path = tmp_path / "rdisk9"
        path.write_bytes(b"\0" * 1024)
        assert check_raw_device_access(str(path)) is True

    def test_missing(self, tmp_path):
        """A missing node should not be accessible."""
        assert check_raw_device_access(str(tmp_path / "rdisk99")) is False

    def test_unreadable(self, tmp_path):
        """A directory cannot be read as a device."""
        assert check_raw_device_access(str(tmp_path)) is False


class TestHasAdminPrivileges:
    """Tests for has_admin_privileges."""

    def test_probe_device_from_settings(self, tmp_path):
        """The configured probe device should be opened."""
        probe = tmp_path / "disk0"
        probe.write_bytes(b"\0" * 512)
        assert has_admin_privileges(Settings(privilege_probe_device=str(probe)))

    def test_no_access(self, tmp_path):
        """An unreadable probe device should report no privileges."""
        settings = Settings(privilege_probe_device=str(tmp_path / "missing"))
        assert has_admin_privileges(settings) is False
