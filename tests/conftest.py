from __future__ import annotations

import pytest

from releaseci.ui.console import Console, get_console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    previous = get_console()
    set_console(Console(quiet=True))
    yield
    set_console(previous)
