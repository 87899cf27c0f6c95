"""
Forge Frontend Detection

Decides whether a project has a UI worth reviewing and how to serve it, and
runs the dev server for the duration of a UX review.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
import shlex
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from .process import kill_process_tree, sanitize_env

logger = logging.getLogger("forge")

FRAMEWORK_SIGNATURES = (
    ("vite.config.ts", "npx vite", 5173),
    ("vite.config.js", "npx vite", 5173),
    ("next.config.js", "npx next dev", 3000),
    ("next.config.mjs", "npx next dev", 3000),
    ("next.config.ts", "npx next dev", 3000),
    ("nuxt.config.ts", "npx nuxi dev", 3000),
    ("svelte.config.js", "npx vite dev", 5173),
    ("astro.config.mjs", "npx astro dev", 4321),
    ("angular.json", "npx ng serve", 4200),
    ("remix.config.js", "npx remix dev", 3000),
    ("gatsby-config.js", "npx gatsby develop", 8000),
)

FRONTEND_DEPS = frozenset({
    "react", "react-dom", "vue", "svelte", "@angular/core", "solid-js", "preact",
    "next", "nuxt", "astro", "@remix-run/react", "gatsby", "lit", "vite",
})

SCRIPT_PRIORITY = ("dev", "serve", "start:dev", "start")
WEB_SERVER_PATTERN = re.compile(
    r"\b(vite|next|nuxt|webpack|react-scripts|ng serve|astro|remix|gatsby|http-server|serve|"
    r"live-server|browser-sync|parcel|turbopack|rsbuild)\b",
    re.IGNORECASE,
)
PORT_PATTERN = re.compile(r"(?:--port|--listen|-p)\s+(\d{2,5})", re.IGNORECASE)
COLON_PORT_PATTERN = re.compile(r":(\d{4,5})\b")
STATIC_PATHS = ("index.html", "public/index.html", "dist/index.html")
DEFAULT_PORT = 3000


@dataclasses.dataclass
class FrontendConfig:
    dev_command: str
    dev_port: int = DEFAULT_PORT
    source: str = ""
    static_only: bool = False


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def extract_port(script: str) -> Optional[int]:
    match = PORT_PATTERN.search(script) or COLON_PORT_PATTERN.search(script)
    if match:
        port = int(match.group(1))
        if 0 < port < 65536:
            return port
    return None


def pick_dev_script(scripts: Optional[Dict[str, str]]) -> Optional[tuple]:
    if not scripts:
        return None
    for name in SCRIPT_PRIORITY:
        if scripts.get(name):
            return name, scripts[name]
    for name, value in scripts.items():
        if name.startswith("dev:"):
            return name, value
    return None


def detect_frontend(project: Optional[str]) -> Optional[FrontendConfig]:
    """Return how to serve the project's UI, or None if it has none."""
    if not project:
        return None
    root = Path(project)

    explicit = _read_json(root / ".forge.json")
    if explicit and explicit.get("devCommand"):
        return FrontendConfig(explicit["devCommand"], int(explicit.get("devPort", DEFAULT_PORT)), ".forge.json")

    pkg = _read_json(root / "package.json")
    if pkg and isinstance(pkg.get("forge"), dict) and pkg["forge"].get("devCommand"):
        field = pkg["forge"]
        return FrontendConfig(field["devCommand"], int(field.get("devPort", DEFAULT_PORT)), "package.json/forge")

    scripts = pkg.get("scripts") if pkg else None
    dev_script = pick_dev_script(scripts if isinstance(scripts, dict) else None)

    for config_file, command, port in FRAMEWORK_SIGNATURES:
        if (root / config_file).exists():
            if dev_script:
                return FrontendConfig(f"npm run {dev_script[0]}", extract_port(dev_script[1]) or port,
                                      f"framework:{config_file}")
            return FrontendConfig(command, port, f"framework:{config_file}")

    if pkg and dev_script:
        deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
        if any(d in FRONTEND_DEPS for d in deps):
            return FrontendConfig(f"npm run {dev_script[0]}", extract_port(dev_script[1]) or DEFAULT_PORT,
                                  "package.json/deps")
        if WEB_SERVER_PATTERN.search(dev_script[1]):
            return FrontendConfig(f"npm run {dev_script[0]}", extract_port(dev_script[1]) or DEFAULT_PORT,
                                  "package.json/scripts")

    for rel in STATIC_PATHS:
        if (root / rel).exists():
            serve_dir = str(Path(rel).parent)
            return FrontendConfig(f"npx serve {serve_dir}", DEFAULT_PORT, f"static:{rel}", static_only=True)
    return None


class DevServer:
    """Dev server process in its own process group."""

    def __init__(self, proc: asyncio.subprocess.Process, port: int):
        self.proc = proc
        self.port = port
        self.url = f"http://localhost:{port}"

    async def stop(self) -> None:
        if self.proc.returncode is not None:
            return
        kill_process_tree(self.proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=1.5)
        except asyncio.TimeoutError:
            kill_process_tree(self.proc, signal.SIGKILL)


async def wait_for_port(port: int, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            _, writer = await asyncio.open_connection("127.0.0.1", port)
        except OSError:
            await asyncio.sleep(0.5)
            continue
        writer.close()
        return True
    return False


async def start_dev_server(project: str, config: FrontendConfig, timeout: float = 30.0) -> DevServer:
    """Start the dev command and wait until its port accepts connections.

    Raises:
        OSError: If the command cannot be spawned
    """
    env = sanitize_env()
    env.update({"PORT": str(config.dev_port), "BROWSER": "none"})
    proc = await asyncio.create_subprocess_exec(
        *shlex.split(config.dev_command),
        cwd=project,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        env=env,
        start_new_session=True,
    )
    server = DevServer(proc, config.dev_port)
    if not await wait_for_port(config.dev_port, timeout):
        logger.warning(f"Dev server on port {config.dev_port} not reachable after {timeout:.0f}s")
    return server
