# vk_wrapper/main.py
"""
VK Wrapper – FastAPI config page + desktop window
=================================================

Run options
-----------
• Development (browser):   python -m vk_wrapper.main
• Desktop window:          python run_wrapper_desktop.py

The window first shows the local config page (node/npx paths, optional
port).  "Launch" calls `Bridge.launch()` through pywebview's JS API; the
supervisor starts vibe-kanban and the window then loads the server URL,
or an error page if startup failed.  Closing the window, SIGINT and
SIGTERM all stop the server tree before the process exits.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from vk_wrapper.api import server, settings
from vk_wrapper.core import config
from vk_wrapper.core.errors import LauncherError
from vk_wrapper.core.runtime import BackgroundLoop
from vk_wrapper.core.supervisor import ProcessSupervisor

try:
    import webview  # type: ignore
except ModuleNotFoundError:
    webview = None  # run_desktop() will raise

log = logging.getLogger(__name__)

# ────────────────────────────── template setup
BASE_PATH = Path(__file__).resolve().parent
TEMPLATES = Jinja2Templates(directory=str(BASE_PATH / "templates"))

app = FastAPI(
    title=config.APP_NAME,
    version=config.WRAPPER_VERSION,
    docs_url=None,
    redoc_url=None,
)

PAGE_CONTEXT: Dict[str, Any] = {
    "app_name": config.APP_NAME,
    "wrapper_version": config.WRAPPER_VERSION,
    "min_port": config.MIN_USER_PORT,
    "max_port": config.MAX_USER_PORT,
}


# ────────────────────────────── logging
def setup_logging(level: Optional[str] = None) -> None:
    """Console + rotating file in the user log dir."""
    level = (level or os.getenv("VK_WRAPPER_LOG_LEVEL", "INFO")).upper()
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    try:
        config.LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file_path(), maxBytes=1_000_000, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)
    except OSError as exc:
        log.warning("File logging disabled: %s", exc)


# ────────────────────────────── pages
@app.get("/", response_class=HTMLResponse)
async def page_index(request: Request):
    cfg = config.read_config()
    return TEMPLATES.TemplateResponse(
        request,
        "pages/index.html",
        {
            **PAGE_CONTEXT,
            "node_path": cfg.get("nodePath") or "",
            "npx_path": cfg.get("npxPath") or "",
            "last_port": config.get_last_port() or "",
        },
    )


app.include_router(settings.router, prefix="/api")
app.include_router(server.router, prefix="/api")


def render_error(message: str, hint: str) -> str:
    """HTML for the error page shown in the window."""
    return TEMPLATES.get_template("pages/error.html").render(
        **PAGE_CONTEXT, message=message, hint=hint
    )


def parse_port(value: Any) -> Optional[int]:
    """
    Blank -> None (let the server pick); otherwise an int within the
    user port range.  Raises ValueError for anything else.
    """
    if value is None or str(value).strip() == "":
        return None
    port = int(str(value).strip())
    if not config.MIN_USER_PORT <= port <= config.MAX_USER_PORT:
        raise ValueError(
            f"Please enter a valid port number between "
            f"{config.MIN_USER_PORT} and {config.MAX_USER_PORT}"
        )
    return port


# ────────────────────────────── application shell
class WrapperApp:
    """
    Ties the supervisor to the window.  Owns the one ProcessSupervisor
    and the loop it runs on.
    """

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        runtime: Optional[BackgroundLoop] = None,
    ) -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.runtime = runtime or BackgroundLoop()
        self.window = None
        self._quitting = threading.Event()

    # ---- presentation ------------------------------------------------
    def load_url(self, url: str) -> None:
        if self.window is not None:
            self.window.load_url(url)

    def show_error(self, message: str, hint: str) -> None:
        if self.window is not None:
            self.window.load_html(render_error(message, hint))

    # ---- lifecycle ---------------------------------------------------
    def launch_server(self, port: Optional[int] = None) -> Dict[str, Any]:
        if self.supervisor.is_running() and self.supervisor.get_service_url():
            url = self.supervisor.get_service_url()
            self.load_url(url)
            return {"ok": True, "url": url}

        log.info("Starting vibe-kanban server... %s", f"on port {port}" if port else "(auto port)")
        try:
            url = self.runtime.run(self.supervisor.start_server(port))
        except LauncherError as exc:
            log.error("Failed to start server: %s", exc.message)
            self.show_error(exc.message, exc.hint)
            return {"ok": False, "error": exc.message}
        except Exception as exc:
            log.exception("Failed to start server")
            self.show_error(str(exc) or "Unknown error", LauncherError.hint)
            return {"ok": False, "error": str(exc) or "Unknown error"}

        if port is not None:
            config.set_last_port(port)
        self.load_url(url)
        return {"ok": True, "url": url}

    def stop_server(self) -> None:
        if self.runtime.loop is None:
            return
        timeout = self.supervisor.grace_period * 3 + 10
        try:
            self.runtime.run(self.supervisor.kill_server(), timeout=timeout)
        except Exception:
            log.exception("Server shutdown did not complete")

    def shutdown(self) -> None:
        """Stop the server tree and the loop; safe to call more than once."""
        if self._quitting.is_set():
            return
        self._quitting.set()
        log.info("Shutting down server...")
        self.stop_server()
        self.runtime.stop()

    def install_signal_handlers(self) -> None:
        def _on_signal(signum, _frame):
            log.info("Received signal %s", signum)
            self.shutdown()
            os._exit(0)

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)


# ---- Bridge object for pywebview ----
class Bridge:                                    # pylint: disable=too-few-public-methods
    """Exposed to the config page as `window.pywebview.api`."""

    def __init__(self, wrapper: WrapperApp) -> None:
        self._wrapper = wrapper

    def launch(self, port=None):
        """Called from JS when the user presses "Launch"."""
        try:
            parsed = parse_port(port)
        except ValueError as exc:
            return {"ok": False, "error": str(exc)}
        return self._wrapper.launch_server(parsed)


# ────────────────────────────── desktop helper
def _run_uvicorn_bg(host: str, port: int) -> uvicorn.Server:
    server_ = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="error"))
    threading.Thread(target=server_.run, name="ui-server", daemon=True).start()

    deadline = time.monotonic() + 5
    while not server_.started and time.monotonic() < deadline:
        time.sleep(0.05)                         # wait until Uvicorn is ready
    return server_


def run_desktop(host: str = config.UI_HOST, port: int = config.UI_PORT) -> None:
    if webview is None:
        raise RuntimeError("pywebview not installed – run:  pip install pywebview")

    setup_logging()
    wrapper = WrapperApp()
    wrapper.runtime.start()
    app.state.wrapper = wrapper

    _run_uvicorn_bg(host, port)

    win_cfg = config.read_config().get("window") or {}
    wrapper.window = webview.create_window(
        title=config.APP_NAME,
        url=f"http://{host}:{port}/",
        width=win_cfg.get("width", 1400),
        height=win_cfg.get("height", 900),
        min_size=(800, 600),
        js_api=Bridge(wrapper),
    )
    wrapper.window.events.closing += wrapper.shutdown
    wrapper.install_signal_handlers()

    try:
        webview.start()
    finally:
        wrapper.shutdown()


if __name__ == "__main__":  # pragma: no cover
    setup_logging()
    _wrapper = WrapperApp()
    _wrapper.runtime.start()
    app.state.wrapper = _wrapper
    uvicorn.run(app, host=config.UI_HOST, port=config.UI_PORT)
    _wrapper.shutdown()
