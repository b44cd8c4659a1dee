"""
Test Fixtures

Plain helpers shared by test modules. Pytest fixtures live in conftest.py.
"""

import asyncio
from pathlib import Path
from typing import Dict


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Create files (relative path -> text) under root."""
    for relative, text in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    return root


async def next_signal(connection, timeout: float = 5.0):
    """Next reload signal on a ClientConnection, failing the test on timeout."""
    return await asyncio.wait_for(connection.receive(), timeout)


async def eventually(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
