"""Shared fixtures: sample layout trees and a primed fake gateway."""

from typing import Any, Dict

import pytest

from tests.fakes import FakeI3Gateway, window


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def flat_tree() -> Dict[str, Any]:
    """A single workspace holding a Firefox and a terminal window."""
    return {
        "id": 1,
        "type": "workspace",
        "name": "1",
        "nodes": [
            window(100, "Mozilla Firefox", "firefox", "Navigator"),
            window(101, "Terminal", "Alacritty", "alacritty"),
        ],
    }


@pytest.fixture
def nested_tree() -> Dict[str, Any]:
    """root -> output eDP-1 -> workspaces 1 (Firefox) and 2 (Code)."""
    return {
        "id": 1,
        "type": "root",
        "name": "root",
        "nodes": [
            {
                "id": 2,
                "type": "output",
                "name": "eDP-1",
                "nodes": [
                    {
                        "id": 3,
                        "type": "workspace",
                        "name": "1",
                        "nodes": [window(100, "Mozilla Firefox", "firefox")],
                    },
                    {
                        "id": 4,
                        "type": "workspace",
                        "name": "2",
                        "nodes": [window(101, "Code", "Code")],
                    },
                ],
            },
        ],
    }


@pytest.fixture
def fake_gateway(nested_tree) -> FakeI3Gateway:
    return FakeI3Gateway(
        tree=nested_tree,
        workspaces=[
            {"name": "1", "num": 1, "visible": True, "focused": True},
            {"name": "2", "num": 2, "visible": False, "focused": False},
        ],
    )
