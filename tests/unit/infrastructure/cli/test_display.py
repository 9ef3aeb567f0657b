import pytest
from unittest.mock import MagicMock

from rich.panel import Panel
from rich.table import Table

from apistash.core.exceptions import ExhaustedRetries
from apistash.domain.models.results import CallResult, CallSource
from apistash.infrastructure.cli.display import ConsoleDisplay


@pytest.fixture
def mock_console():
    """Fixture to create a mock rich Console object."""
    return MagicMock()


@pytest.fixture
def console_display(mock_console: MagicMock):
    """Fixture to create a ConsoleDisplay instance with a mocked console."""
    return ConsoleDisplay(console=mock_console)


def test_display_output_renders_bytes_as_text(console_display: ConsoleDisplay, mock_console: MagicMock):
    console_display.display_output(b'{"ok": true}', title="Body")
    mock_console.print.assert_called_once()
    (panel,), _ = mock_console.print.call_args
    assert isinstance(panel, Panel)
    assert panel.renderable.plain == '{"ok": true}'


def test_display_result_title_names_source(console_display: ConsoleDisplay, mock_console: MagicMock):
    console_display.display_result(CallResult(value="v", source=CallSource.CACHE, attempts=0))
    (panel,), _ = mock_console.print.call_args
    assert "cache" in panel.title


def test_display_error(console_display: ConsoleDisplay, mock_console: MagicMock):
    console_display.display_error("Something went wrong")
    (panel,), _ = mock_console.print.call_args
    assert panel.renderable.plain == "Something went wrong"
    assert "Error" in panel.title


def test_display_batch_has_one_row_per_item(console_display: ConsoleDisplay, mock_console: MagicMock):
    results = [
        CallResult(value=b"a", source=CallSource.TRANSPORT, attempts=1),
        CallResult(source=CallSource.FAILED, attempts=3, error=ExhaustedRetries(3)),
    ]
    console_display.display_batch(results, ["https://api/a", "https://api/b"])
    (table,), _ = mock_console.print.call_args
    assert isinstance(table, Table)
    assert table.row_count == 2
    assert len(table.columns) == 5
