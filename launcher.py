import logging
import os
import sys
import webbrowser
import threading
import time
import subprocess
import traceback
from datetime import datetime

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8123


def get_error_log_path():
    """Get the path for the error log file."""
    return os.path.expanduser("~/Documents/Pageturn_error.log")


def log_error(message, include_traceback=True):
    """Log an error message to file."""
    try:
        error_log = get_error_log_path()
        with open(error_log, "a") as f:
            f.write(f"\n[{datetime.now().isoformat()}]\n")
            f.write(f"{message}\n")
            if include_traceback:
                f.write(traceback.format_exc())
                f.write("\n")
    except OSError:
        pass


def log_info(message):
    """Log an info message to file."""
    try:
        error_log = get_error_log_path()
        with open(error_log, "a") as f:
            f.write(f"[{datetime.now().isoformat()}] INFO: {message}\n")
    except OSError:
        pass


def get_server_address():
    """Host and port from PAGETURN_HOST / PAGETURN_PORT, with defaults."""
    host = os.environ.get("PAGETURN_HOST", DEFAULT_HOST)
    try:
        port = int(os.environ.get("PAGETURN_PORT", DEFAULT_PORT))
    except ValueError:
        log_error("Invalid PAGETURN_PORT, using default", include_traceback=False)
        port = DEFAULT_PORT
    return host, port


def open_browser(url):
    """Open the browser after a short delay to ensure server is running."""
    time.sleep(2)
    try:
        webbrowser.open(url)
    except Exception:
        # Fallback: use macOS open command
        try:
            subprocess.run(["open", url], check=False)
        except Exception as e:
            log_error(f"Failed to open browser: {e}", include_traceback=False)


def main():
    try:
        host, port = get_server_address()
        log_info(f"Starting Pageturn on {host}:{port}")
        logging.basicConfig(level=logging.INFO, format="%(levelname)s:     %(name)s - %(message)s")

        # Import here so a broken environment is logged, not just printed
        import uvicorn
        from server import app

        if not os.environ.get("PAGETURN_NO_BROWSER"):
            threading.Thread(
                target=open_browser, args=(f"http://{host}:{port}",), daemon=True
            ).start()

        uvicorn_kwargs = {
            "host": host,
            "port": port,
            "log_level": "info",
        }

        # Prefer uvloop/httptools for faster event loop and HTTP parsing
        if sys.platform != "win32":
            uvicorn_kwargs.update({"loop": "uvloop", "http": "httptools"})
        else:
            uvicorn_kwargs.update({"http": "h11"})

        uvicorn.run(app, **uvicorn_kwargs)
    except Exception as e:
        log_error(f"Fatal error: {e}")
        raise


if __name__ == "__main__":
    main()
