"""Tests for grub.cfg kernel command line patching."""

import pytest

from oem_customizer.storage.exceptions import (
    BootConfigWriteFailedError,
    CommandError,
    InvalidBootConfigError,
    PartitionUUIDNotFoundError,
)
from oem_customizer.verity.boot_config import (
    append_verity_target,
    build_verity_target,
    get_part_uuid,
    parse_part_uuid,
    patch_command_line,
)

OEM_UUID = "9db2ae75-98dc-5b4f-a38b-b3cb0b80b17f"


class FakeScanner:
    def __init__(self, output="", error=None):
        self.output = output
        self.error = error

    def list_attributes(self):
        if self.error is not None:
            raise self.error
        return self.output


class TestPartUuid:
    def test_parse(self, blkid_output):
        assert parse_part_uuid(blkid_output, "/dev/sda8") == OEM_UUID

    def test_prefix_does_not_match_longer_name(self, blkid_output):
        """/dev/sda1 must not pick up the /dev/sda12 line."""
        assert parse_part_uuid(blkid_output, "/dev/sda1") == "120991ff-4f12-43bf-b962-17325185121d"
        assert parse_part_uuid(blkid_output, "/dev/sda12") == "aaea6e5e-bc5f-2542-b19a-66c2daa4d5a8"

    def test_uuid_is_not_partuuid(self):
        output = '/dev/sda8: UUID="1401457b-449d-4755-9a1e-57054b287489" TYPE="ext4"\n'
        with pytest.raises(PartitionUUIDNotFoundError):
            parse_part_uuid(output, "/dev/sda8")

    def test_device_without_partuuid(self, blkid_output):
        with pytest.raises(PartitionUUIDNotFoundError, match="/dev/dm-0"):
            parse_part_uuid(blkid_output, "/dev/dm-0")

    def test_get_part_uuid(self, blkid_output):
        assert get_part_uuid("/dev/sda8", scanner=FakeScanner(blkid_output)) == OEM_UUID

    def test_get_part_uuid_missing(self, blkid_output):
        with pytest.raises(PartitionUUIDNotFoundError) as exc_info:
            get_part_uuid("/dev/sda9", scanner=FakeScanner(blkid_output))
        assert exc_info.value.context == {"partition": "/dev/sda9"}

    def test_scanner_failure(self):
        scanner = FakeScanner(error=CommandError("blkid failed", command=["blkid"], returncode=2))
        with pytest.raises(CommandError) as exc_info:
            get_part_uuid("/dev/sda8", scanner=scanner)
        assert exc_info.value.context["partition"] == "/dev/sda8"


class TestBuildVerityTarget:
    def test_target_clause(self):
        target = build_verity_target("oemroot", "UUID-1", "abc", "def", 100)
        assert target == (
            "oemroot none ro 1,0 800 verity payload=PARTUUID=UUID-1 hashtree=PARTUUID=UUID-1 "
            "hashstart=800 alg=sha256 root_hexdigest=abc salt=def"
        )


class TestPatchCommandLine:
    def test_count_incremented_and_target_appended(self):
        line = 'linux /vmlinuz root=/dev/dm-0 dm="1 vroot none ro 1,0 8 verity x=y" quiet'
        patched = patch_command_line(line, "oemroot none ro 1,0 800 verity z=w")
        assert patched == (
            'linux /vmlinuz root=/dev/dm-0 dm="2 vroot none ro 1,0 8 verity x=y,'
            'oemroot none ro 1,0 800 verity z=w" quiet'
        )

    def test_multi_digit_count(self):
        line = 'dm="9 a,b,c,d,e,f,g,h,i"'
        assert patch_command_line(line, "j") == 'dm="10 a,b,c,d,e,f,g,h,i,j"'

    def test_unterminated_value(self):
        with pytest.raises(InvalidBootConfigError, match="line 7"):
            patch_command_line('linux dm="1 vroot', "t", 7)

    def test_missing_count(self):
        with pytest.raises(InvalidBootConfigError):
            patch_command_line('linux dm="vroot none"', "t", 1)

    def test_missing_marker(self):
        with pytest.raises(InvalidBootConfigError):
            patch_command_line("linux root=/dev/sda3", "t", 1)


class TestAppendVerityTarget:
    def test_patches_dm_lines_only(self, tmp_path, grub_cfg_text):
        path = tmp_path / "grub.cfg"
        path.write_text(grub_cfg_text, encoding="utf-8")

        patched = append_verity_target(path, "oemroot", OEM_UUID, "abc", "def", 100)

        assert patched == 1
        old_lines = grub_cfg_text.split("\n")
        new_lines = path.read_text(encoding="utf-8").split("\n")
        assert len(old_lines) == len(new_lines)
        changed = [index for index, (old, new) in enumerate(zip(old_lines, new_lines)) if old != new]
        assert len(changed) == 1
        new_line = new_lines[changed[0]]
        assert 'dm="2 vroot none ro 1,0 4077568 verity' in new_line
        assert new_line.endswith(
            ",oemroot none ro 1,0 800 verity "
            f"payload=PARTUUID={OEM_UUID} hashtree=PARTUUID={OEM_UUID} "
            'hashstart=800 alg=sha256 root_hexdigest=abc salt=def"'
        )

    def test_every_command_line_patched(self, tmp_path):
        path = tmp_path / "grub.cfg"
        path.write_text('linux A dm="1 a"\nlinux B dm="2 b,c"\n', encoding="utf-8")

        assert append_verity_target(path, "oemroot", "U", "r", "s", 1) == 2

        content = path.read_text(encoding="utf-8")
        assert 'dm="2 a,oemroot none ro 1,0 8 verity' in content
        assert 'dm="3 b,c,oemroot none ro 1,0 8 verity' in content
        assert content.endswith('salt=s"\n')

    def test_crlf_kept(self, tmp_path):
        path = tmp_path / "grub.cfg"
        path.write_bytes(b'set timeout=0\r\nlinux A dm="1 a"\r\n')

        append_verity_target(path, "oemroot", "U", "r", "s", 1)

        content = path.read_bytes()
        assert content.startswith(b"set timeout=0\r\n")
        assert content.endswith(b'salt=s"\r\n')

    def test_no_dm_lines_warns_and_skips_write(self, tmp_path, mocker, log_records):
        path = tmp_path / "grub.cfg"
        path.write_text("set timeout=0\n", encoding="utf-8")
        write_bytes = mocker.spy(type(path), "write_bytes")

        assert append_verity_target(path, "oemroot", "U", "r", "s", 1) == 0

        assert path.read_text(encoding="utf-8") == "set timeout=0\n"
        write_bytes.assert_not_called()
        levels = [record["level"].name for record in log_records]
        assert "WARNING" in levels
        assert "INFO" not in levels

    def test_malformed_line_leaves_file_untouched(self, tmp_path):
        path = tmp_path / "grub.cfg"
        original = 'linux A dm="1 a"\nlinux B dm="b\n'
        path.write_text(original, encoding="utf-8")

        with pytest.raises(InvalidBootConfigError) as exc_info:
            append_verity_target(path, "oemroot", "U", "r", "s", 1)

        assert exc_info.value.line_number == 2
        assert exc_info.value.context["boot_config_path"] == str(path)
        assert path.read_text(encoding="utf-8") == original

    def test_missing_file(self, tmp_path):
        path = tmp_path / "missing" / "grub.cfg"

        with pytest.raises(BootConfigWriteFailedError, match="cannot read") as exc_info:
            append_verity_target(path, "oemroot", "U", "r", "s", 1)

        assert exc_info.value.context["size_4k"] == 1
        assert exc_info.value.context["part_uuid"] == "U"

    def test_write_failure(self, tmp_path, mocker):
        path = tmp_path / "grub.cfg"
        path.write_text('linux A dm="1 a"\n', encoding="utf-8")
        mocker.patch("pathlib.Path.write_bytes", side_effect=PermissionError("read-only"))

        with pytest.raises(BootConfigWriteFailedError, match="cannot write"):
            append_verity_target(path, "oemroot", "U", "r", "s", 1)
