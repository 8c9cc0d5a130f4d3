"""
Output helpers for the command line interface.
"""
import json
from typing import Any, Dict, NoReturn

import typer


def fail(msg: str) -> NoReturn:
    """Print a JSON error and exit with code 1."""
    typer.echo(json.dumps({"error": msg}))
    raise typer.Exit(code=1)


def succeed(data: Dict[str, Any]) -> NoReturn:
    """Print JSON data and exit with code 0."""
    typer.echo(json.dumps(data, indent=2, default=str))
    raise typer.Exit(code=0)
