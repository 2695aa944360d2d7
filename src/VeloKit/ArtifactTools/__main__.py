"""Allow ``python -m VeloKit.ArtifactTools`` to invoke the Typer CLI."""

from .cli import app

if __name__ == "__main__":
    app(prog_name="velotools")
