"""Helper to launch the adapter under uvicorn from Python."""
from __future__ import annotations
import os
import subprocess
import sys


def build_command() -> list[str]:
    host = os.getenv("GRID_ADAPTER_HOST", "0.0.0.0")
    port = os.getenv("GRID_ADAPTER_PORT", "8000")
    workers = os.getenv("GRID_ADAPTER_WORKERS", "1")

    return [
        sys.executable,
        "-m",
        "uvicorn",
        "grid_adapter.serve.fastapi_app:app",
        "--host", host,
        "--port", str(port),
        "--workers", str(workers),
    ]


def main() -> None:
    subprocess.run(build_command(), check=True)


if __name__ == "__main__":
    main()
