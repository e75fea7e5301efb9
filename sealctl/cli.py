import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import typer

from sealctl.commands import deploy, delete, join, reset, status, upgrade
from sealctl.commands import handle_errors, installer_config
from sealctl.config import Config
from sealctl.logging import setup_logger
from sealctl.modules.kubernetes.config import InstallerConfig

app = typer.Typer(help="sealctl - Kubernetes cluster lifecycle over SSH.")


# Configure logging
def setup_logging(debug_mode: bool = False, config: Optional[InstallerConfig] = None) -> logging.Logger:
    """Configure the sealctl logger from the debug flag and the installer config."""
    level_name = "DEBUG" if debug_mode else (config.logging.level if config else Config.LOG_LEVEL)
    log_level = getattr(logging, level_name, logging.INFO)
    logger = setup_logger("sealctl", log_level)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('paramiko').setLevel(logging.WARNING)

    if config and config.logging.file:
        log_file = Path(config.logging.file).expanduser().absolute()
        if not any(getattr(h, "baseFilename", None) == str(log_file) for h in logger.handlers):
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=log_file,
                maxBytes=config.logging.max_size_mb * 1024 * 1024,
                backupCount=config.logging.backup_count,
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            logger.addHandler(file_handler)
            logger.debug(f"Logging to file: {log_file}")
    return logger


# Add all command groups
app.add_typer(deploy.app, name="deploy", help="Install a cluster")
app.add_typer(join.app, name="join", help="Add masters or workers to a cluster")
app.add_typer(delete.app, name="delete", help="Remove masters or workers from a cluster")
app.add_typer(upgrade.app, name="upgrade", help="Upgrade Kubernetes on a cluster")
app.add_typer(reset.app, name="reset", help="Tear a cluster down")
app.add_typer(status.app, name="status", help="Show a cluster's saved state")


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the sealctl config file"),
):
    """sealctl - Kubernetes cluster lifecycle over SSH."""
    if ctx.obj is None:
        ctx.obj = {}
    ctx.obj["debug"] = debug
    with handle_errors(ctx):
        if "config" not in ctx.obj:
            ctx.obj["config"] = InstallerConfig.load(config)
        setup_logging(debug, installer_config(ctx))
    if debug:
        logging.getLogger("sealctl").debug("Debug mode enabled")


if __name__ == "__main__":
    app()
