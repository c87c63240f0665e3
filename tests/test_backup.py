"""Tests for csv_merger.backup module."""

from unittest.mock import patch

import pytest

from csv_merger.backup import (
    BackupError,
    copy_file,
    existing_slots,
    rotate_backups,
    slot_path,
    write_master,
)

from conftest import read_rows

SCHEMA = ["SourceFile", "Name"]


def _rows(*names):
    return [{"SourceFile": "x.csv", "Name": name} for name in names]


def _fill_slots(folder, base, count):
    for slot in range(1, count + 1):
        slot_path(folder, base, slot).write_text(f"Name\nversion{slot}\n")


class TestSlots:
    """Tests for slot_path and existing_slots."""

    def test_slot_path(self, temp_dir):
        assert slot_path(temp_dir, "master", 3) == temp_dir / "master_3.csv"

    def test_no_slots(self, temp_dir):
        assert existing_slots(temp_dir, "master") == []

    def test_contiguous_slots(self, temp_dir):
        _fill_slots(temp_dir, "master", 3)
        assert existing_slots(temp_dir, "master") == [1, 2, 3]

    def test_gap_ends_the_family(self, temp_dir):
        _fill_slots(temp_dir, "master", 2)
        slot_path(temp_dir, "master", 4).write_text("Name\n")
        assert existing_slots(temp_dir, "master") == [1, 2]

    def test_other_bases_ignored(self, temp_dir):
        _fill_slots(temp_dir, "other", 2)
        assert existing_slots(temp_dir, "master") == []


class TestCopyFile:
    """Tests for copy_file function."""

    def test_copy_file_creates_parent_dirs(self, temp_dir):
        src = temp_dir / "source.csv"
        dst = temp_dir / "nested" / "dest.csv"
        src.write_text("a,b\n")

        copy_file(src, dst)

        assert dst.read_text() == "a,b\n"

    def test_copy_file_preserves_mtime(self, temp_dir):
        src = temp_dir / "source.csv"
        dst = temp_dir / "dest.csv"
        src.write_text("a,b\n")

        copy_file(src, dst)

        assert dst.stat().st_mtime == src.stat().st_mtime


class TestRotateBackups:
    """Tests for rotate_backups function."""

    def test_nothing_to_rotate(self, temp_dir):
        rotate_backups(temp_dir, "master", 3)
        assert list(temp_dir.iterdir()) == []

    def test_first_slot_is_copied_not_moved(self, temp_dir):
        _fill_slots(temp_dir, "master", 1)
        rotate_backups(temp_dir, "master", 3)

        assert slot_path(temp_dir, "master", 1).read_text() == "Name\nversion1\n"
        assert slot_path(temp_dir, "master", 2).read_text() == "Name\nversion1\n"

    def test_shifts_every_slot(self, temp_dir):
        _fill_slots(temp_dir, "master", 3)
        rotate_backups(temp_dir, "master", 5)

        assert existing_slots(temp_dir, "master") == [1, 2, 3, 4]
        assert slot_path(temp_dir, "master", 4).read_text() == "Name\nversion3\n"
        assert slot_path(temp_dir, "master", 3).read_text() == "Name\nversion2\n"
        assert slot_path(temp_dir, "master", 2).read_text() == "Name\nversion1\n"

    def test_drops_slot_beyond_limit(self, temp_dir):
        _fill_slots(temp_dir, "master", 3)
        rotate_backups(temp_dir, "master", 3)

        assert existing_slots(temp_dir, "master") == [1, 2, 3]
        assert slot_path(temp_dir, "master", 3).read_text() == "Name\nversion2\n"

    def test_max_one_keeps_no_history(self, temp_dir):
        _fill_slots(temp_dir, "master", 1)
        rotate_backups(temp_dir, "master", 1)

        assert existing_slots(temp_dir, "master") == [1]

    def test_unlimited(self, temp_dir):
        _fill_slots(temp_dir, "master", 6)
        rotate_backups(temp_dir, "master", 0)

        assert existing_slots(temp_dir, "master") == [1, 2, 3, 4, 5, 6, 7]

    def test_prunes_slots_left_by_larger_limit(self, temp_dir):
        _fill_slots(temp_dir, "master", 5)
        rotate_backups(temp_dir, "master", 2)

        assert existing_slots(temp_dir, "master") == [1, 2]
        assert slot_path(temp_dir, "master", 2).read_text() == "Name\nversion1\n"


class TestWriteMaster:
    """Tests for write_master function."""

    def test_first_write(self, temp_dir):
        path = write_master(temp_dir, "master", SCHEMA, _rows("John", "Jane"), max_backups=3)

        assert path == slot_path(temp_dir, "master", 1)
        assert read_rows(path) == [SCHEMA, ["x.csv", "John"], ["x.csv", "Jane"]]
        assert existing_slots(temp_dir, "master") == [1]

    def test_creates_output_folder(self, temp_dir):
        folder = temp_dir / "new" / "out"
        write_master(folder, "master", SCHEMA, _rows("John"), max_backups=3)
        assert slot_path(folder, "master", 1).exists()

    def test_header_only_when_no_rows(self, temp_dir):
        path = write_master(temp_dir, "master", SCHEMA, [], max_backups=3)
        assert read_rows(path) == [SCHEMA]

    def test_three_merges_with_two_backups(self, temp_dir):
        for name in ("first", "second", "third"):
            write_master(temp_dir, "master", SCHEMA, _rows(name), max_backups=2)

        assert existing_slots(temp_dir, "master") == [1, 2]
        assert read_rows(slot_path(temp_dir, "master", 1))[1] == ["x.csv", "third"]
        assert read_rows(slot_path(temp_dir, "master", 2))[1] == ["x.csv", "second"]
        assert not slot_path(temp_dir, "master", 3).exists()

    @pytest.mark.parametrize("max_backups", [1, 2, 3, 5])
    def test_count_never_exceeds_limit(self, temp_dir, max_backups):
        for i in range(8):
            write_master(temp_dir, "master", SCHEMA, _rows(str(i)), max_backups=max_backups)
            assert len(existing_slots(temp_dir, "master")) <= max_backups

    def test_unlimited_history_grows(self, temp_dir):
        for i in range(4):
            write_master(temp_dir, "master", SCHEMA, _rows(str(i)), max_backups=0)

        assert existing_slots(temp_dir, "master") == [1, 2, 3, 4]
        assert read_rows(slot_path(temp_dir, "master", 4))[1] == ["x.csv", "0"]

    def test_no_temp_file_left(self, temp_dir):
        write_master(temp_dir, "master", SCHEMA, _rows("John"), max_backups=2)
        assert sorted(p.name for p in temp_dir.iterdir()) == ["master_1.csv"]

    def test_row_with_unknown_column_fails_and_keeps_previous(self, temp_dir):
        write_master(temp_dir, "master", SCHEMA, _rows("John"), max_backups=2)

        with pytest.raises(BackupError):
            write_master(temp_dir, "master", SCHEMA, [{"Name": "x", "Extra": "y"}], max_backups=2)

        assert read_rows(slot_path(temp_dir, "master", 1))[1] == ["x.csv", "John"]
        assert sorted(p.name for p in temp_dir.iterdir()) == ["master_1.csv"]

    def test_validation_failure_keeps_previous(self, temp_dir):
        write_master(temp_dir, "master", SCHEMA, _rows("John"), max_backups=2)

        with patch("csv_merger.backup._validate_csv", side_effect=BackupError("truncated")):
            with pytest.raises(BackupError, match="truncated"):
                write_master(temp_dir, "master", SCHEMA, _rows("Jane"), max_backups=2)

        assert existing_slots(temp_dir, "master") == [1]
        assert read_rows(slot_path(temp_dir, "master", 1))[1] == ["x.csv", "John"]

    def test_rotation_failure_keeps_current_master(self, temp_dir):
        write_master(temp_dir, "master", SCHEMA, _rows("John"), max_backups=3)

        with patch("csv_merger.backup.copy_file", side_effect=OSError("disk full")):
            with pytest.raises(BackupError, match="disk full"):
                write_master(temp_dir, "master", SCHEMA, _rows("Jane"), max_backups=3)

        assert read_rows(slot_path(temp_dir, "master", 1))[1] == ["x.csv", "John"]
        assert not any(p.name.endswith(".tmp") for p in temp_dir.iterdir())

    def test_replace_failure_keeps_current_master(self, temp_dir):
        write_master(temp_dir, "master", SCHEMA, _rows("John"), max_backups=1)

        with patch("csv_merger.backup.os.replace", side_effect=PermissionError("locked")):
            with pytest.raises(BackupError):
                write_master(temp_dir, "master", SCHEMA, _rows("Jane"), max_backups=1)

        assert read_rows(slot_path(temp_dir, "master", 1))[1] == ["x.csv", "John"]

    def test_values_with_commas_and_quotes(self, temp_dir):
        rows = [{"SourceFile": "x.csv", "Name": 'Doe, "JD" John'}]
        path = write_master(temp_dir, "master", SCHEMA, rows, max_backups=1)
        assert read_rows(path)[1] == ["x.csv", 'Doe, "JD" John']
