def main() -> None:
    """Entry point for the remedy CLI."""
    from remedy.ui.cli import cli

    cli()
