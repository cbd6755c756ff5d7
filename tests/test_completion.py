import errno
import os
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from locomotive.completion import check_completion, move_finished, remove_source_files
from locomotive.transfer_types import QueueState, RemoteQueueSnapshot
from tests.mocks.mock_remote import MockRemoteFilesystem


def _write(path: Path, size: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)


class TestCheckCompletion:

    def test_exact_size_and_count_finishes_item(self, store, add_row, ctx, settings, emitter):
        _write(Path(settings.working_dir) / "show.s01e01.mkv", 4096)
        row = add_row("show.s01e01.mkv", size_bytes=4096, file_count=1)

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_finished is True
        assert row.is_failed is False
        emitter.recorder.assert_called_once_with("transferComplete", "show.s01e01.mkv")

    def test_large_recorded_size_is_compared_exactly(self, store, add_row, ctx, settings, emitter):
        row = add_row("show.s01e01.mkv", size_bytes=734003200, file_count=1)
        local = Path(settings.working_dir) / "show.s01e01.mkv"
        local.touch()
        os.truncate(local, 733900000)

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_failed is True
        assert row.is_finished is False
        emitter.recorder.assert_called_once_with("transferFailed", "show.s01e01.mkv")

    def test_directory_totals_are_recursive(self, store, add_row, ctx, settings, emitter):
        root = Path(settings.working_dir) / "album"
        _write(root / "01.flac", 300)
        _write(root / "cd2" / "02.flac", 200)
        row = add_row("album", size_bytes=500, file_count=2)

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_finished is True

    def test_file_count_mismatch_fails(self, store, add_row, ctx, settings, emitter):
        root = Path(settings.working_dir) / "album"
        _write(root / "01.flac", 500)
        row = add_row("album", size_bytes=500, file_count=2)

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_failed is True

    def test_missing_item_fails(self, store, add_row, ctx, settings, emitter):
        row = add_row("ghost.mkv", size_bytes=1, file_count=1)

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_failed is True
        emitter.recorder.assert_called_once_with("transferFailed", "ghost.mkv")

    def test_skips_current_run_and_items_in_lftp_queue(self, store, add_row, ctx, settings, emitter):
        fresh = add_row("fresh.mkv", run_id=ctx.run_id, size_bytes=1, file_count=1)
        busy = add_row("busy.mkv", size_bytes=1, file_count=1)
        ctx = replace(ctx, mapped_queue={busy.id: 0})

        check_completion(store, ctx, settings.working_dir, emitter)

        assert fresh.is_failed is False
        assert busy.is_failed is False
        emitter.recorder.assert_not_called()

    def test_unparsable_queue_skips_check(self, store, add_row, ctx, settings, emitter):
        row = add_row("ghost.mkv", size_bytes=1, file_count=1)
        ctx = replace(ctx, snapshot=RemoteQueueSnapshot(state=QueueState.UNPARSABLE, terminal_id="1"))

        check_completion(store, ctx, settings.working_dir, emitter)

        assert row.is_failed is False


class TestMoveFinished:

    def test_moves_into_target_dir(self, store, add_row, ctx, settings, emitter, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        _write(Path(settings.working_dir) / "movie.mkv", 10)
        row = add_row("movie.mkv", is_finished=True, target_dir=str(target))

        result = move_finished(store, ctx, settings.working_dir, emitter)

        assert (target / "movie.mkv").exists()
        assert not (Path(settings.working_dir) / "movie.mkv").exists()
        assert row.is_moved is True
        assert result.moved_items == ("movie.mkv",)
        emitter.recorder.assert_called_once_with("itemMoved", "movie.mkv")

    def test_missing_target_dir_leaves_item(self, store, add_row, ctx, settings, emitter, tmp_path):
        _write(Path(settings.working_dir) / "movie.mkv", 10)
        row = add_row("movie.mkv", is_finished=True, target_dir=str(tmp_path / "nowhere"))

        result = move_finished(store, ctx, settings.working_dir, emitter)

        assert row.is_moved is False
        assert result.moved_items == ()

    def test_existing_destination_is_not_overwritten(self, store, add_row, ctx, settings, emitter, tmp_path):
        target = tmp_path / "target"
        _write(target / "movie.mkv", 3)
        _write(Path(settings.working_dir) / "movie.mkv", 10)
        row = add_row("movie.mkv", is_finished=True, target_dir=str(target))

        move_finished(store, ctx, settings.working_dir, emitter)

        assert row.is_moved is False
        assert (target / "movie.mkv").stat().st_size == 3

    def test_rename_failure_leaves_item_unmoved(self, store, add_row, ctx, settings, emitter, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        row = add_row("vanished.mkv", is_finished=True, target_dir=str(target))

        move_finished(store, ctx, settings.working_dir, emitter)

        assert row.is_moved is False
        emitter.recorder.assert_not_called()

    def test_cross_device_falls_back_to_copying_move(self, store, add_row, ctx, settings, emitter, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        _write(Path(settings.working_dir) / "movie.mkv", 10)
        row = add_row("movie.mkv", is_finished=True, target_dir=str(target))

        with patch("locomotive.completion.os.rename", side_effect=OSError(errno.EXDEV, "cross-device")), \
                patch("locomotive.completion.shutil.move") as mock_move:
            move_finished(store, ctx, settings.working_dir, emitter)

        mock_move.assert_called_once_with(
            str(Path(settings.working_dir) / "movie.mkv"), str(target / "movie.mkv")
        )
        assert row.is_moved is True


class TestRemoveSourceFiles:

    def test_removes_finished_sources(self, store, add_row, ctx):
        remote = MockRemoteFilesystem()
        remote.paths.add("/remote/a/movie.mkv")
        row = add_row("movie.mkv", is_finished=True, source_dir="/remote/a")

        result = remove_source_files(store, ctx, remote)

        assert remote.removed == ["/remote/a/movie.mkv"]
        assert row.source_cleaned is True
        assert result.cleaned_items == ("/remote/a/movie.mkv",)

    def test_excluded_source_dirs_are_kept(self, store, add_row, ctx):
        remote = MockRemoteFilesystem()
        remote.paths.add("/remote/keep/movie.mkv")
        row = add_row("movie.mkv", is_finished=True, source_dir="/remote/keep")

        remove_source_files(store, ctx, remote, exclude=["keep"])

        assert remote.removed == []
        assert row.source_cleaned is False

    @pytest.mark.parametrize("setup", ["missing", "denied"])
    def test_failures_leave_row_for_next_run(self, store, add_row, ctx, setup):
        remote = MockRemoteFilesystem()
        if setup == "denied":
            remote.paths.add("/remote/a/movie.mkv")
            remote.fail_remove.add("/remote/a/movie.mkv")
        row = add_row("movie.mkv", is_finished=True, source_dir="/remote/a")

        remove_source_files(store, ctx, remote)

        assert row.source_cleaned is False

    def test_unfinished_and_failed_rows_are_ignored(self, store, add_row, ctx):
        remote = MockRemoteFilesystem()
        remote.paths.update({"/remote/a/partial.mkv", "/remote/a/bad.mkv"})
        add_row("partial.mkv")
        add_row("bad.mkv", is_finished=True, is_failed=True)

        remove_source_files(store, ctx, remote)

        assert remote.removed == []
