"""systemd unit generation for running the agent as a service."""

import shutil
import sys
from pathlib import Path

from jinja2 import Environment, PackageLoader

from .config import AgentConfig


def _get_template_env() -> Environment:
    return Environment(
        loader=PackageLoader("tether", "templates"),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _resolve_executable() -> str:
    """Absolute path of the installed ``tether`` script, or a module invocation."""
    exe = shutil.which("tether")
    if exe:
        return exe
    return f"{sys.executable} -m tether"


def generate_unit(
    config: AgentConfig,
    config_path: str | Path,
    user: str | None = None,
    executable: str | None = None,
) -> str:
    """Render the systemd unit from the Jinja2 template.

    The stop timeout leaves room for one deregistration call after SIGTERM.
    """
    env = _get_template_env()
    template = env.get_template("tether.service.j2")
    return template.render(
        config=config,
        config_path=str(Path(config_path).resolve()),
        executable=executable or _resolve_executable(),
        user=user,
        stop_timeout=int(config.request_timeout) + 5,
    )
