"""
Tests that package modules import cleanly in a fresh interpreter.
"""

import subprocess
import sys
from pathlib import Path

import pytest

SRC = Path(__file__).resolve().parents[1] / "src"


class TestImports:
    """Test module import order."""

    @pytest.mark.parametrize("module", [
        "ioc_ingest.cli.iocctl",
        "ioc_ingest.normalize",
        "ioc_ingest.normalize.mergers",
        "ioc_ingest.pipeline",
        "ioc_ingest.pipeline.service",
    ])
    def test_module_imports(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            cwd=str(SRC),
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0, result.stderr
