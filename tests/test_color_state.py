"""Tests for ColorStateStore persistence and compare-and-swap."""

from __future__ import annotations

from pathlib import Path

import pytest

from invoice_deploy.color_state import ColorStateStore
from invoice_deploy.errors import StaleStateError
from invoice_deploy.models import Color, complement


@pytest.fixture
def store(tmp_path: Path) -> ColorStateStore:
    return ColorStateStore(tmp_path / "prod" / ".active")


class TestDefaults:

    def test_missing_file_defaults_to_blue(self, store: ColorStateStore) -> None:
        assert store.get_active() == Color.BLUE
        assert store.get_inactive() == Color.GREEN
        assert store.read().revision == 0

    def test_empty_file_defaults_to_blue(self, store: ColorStateStore) -> None:
        store.state_file.parent.mkdir(parents=True)
        store.state_file.write_text("\n")
        assert store.get_active() == Color.BLUE

    def test_garbage_defaults_to_blue(self, store: ColorStateStore) -> None:
        store.state_file.parent.mkdir(parents=True)
        store.state_file.write_text("purple 7\n")
        assert store.get_active() == Color.BLUE

    def test_legacy_single_word_file(self, store: ColorStateStore) -> None:
        store.state_file.parent.mkdir(parents=True)
        store.state_file.write_text("green\n")

        state = store.read()
        assert state.active == Color.GREEN
        assert state.revision == 0


class TestSetActive:

    @pytest.mark.parametrize("color", list(Color))
    def test_inactive_is_complement(self, store: ColorStateStore, color: Color) -> None:
        store.set_active(color)
        assert store.get_active() == color
        assert store.get_inactive() == complement(color)

    def test_revision_increments(self, store: ColorStateStore) -> None:
        first = store.set_active(Color.GREEN)
        second = store.set_active(Color.BLUE)

        assert first.revision == 1
        assert second.revision == 2
        assert store.state_file.read_text() == "blue 2\n"

    def test_compare_and_swap(self, store: ColorStateStore) -> None:
        store.set_active(Color.GREEN, expected_revision=0)

        with pytest.raises(StaleStateError) as excinfo:
            store.set_active(Color.BLUE, expected_revision=0)

        assert excinfo.value.actual == 1
        assert store.get_active() == Color.GREEN

    def test_no_temp_files_left_behind(self, store: ColorStateStore) -> None:
        store.set_active(Color.GREEN)
        store.set_active(Color.BLUE)

        leftovers = [p.name for p in store.state_file.parent.iterdir()
                     if p.name not in (".active", ".active.lock")]
        assert leftovers == []

    def test_visible_to_a_second_store(self, store: ColorStateStore) -> None:
        store.set_active(Color.GREEN)
        other = ColorStateStore(store.state_file)
        assert other.get_active() == Color.GREEN
