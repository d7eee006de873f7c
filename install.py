#!/usr/bin/env python3
"""Cross-platform install script for cloud-session.

Usage:
    python install.py                              # Production install
    python install.py --dev                        # Development install (includes test tools)
    python install.py --url https://api.example.dev --token abc123
                                                   # Also point .env at a backend

After installing, the script runs ``python -m cloud_session config-check``
inside the virtual environment so a bad config.yaml or .env shows up now
rather than on the first chat.
"""

import argparse
import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
ENV_KEYS = {"url": "CLOUD_SESSION_URL", "token": "CLOUD_SESSION_TOKEN"}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Install cloud-session into ./.venv")
    parser.add_argument("--dev", action="store_true", help="Editable install with test tools")
    parser.add_argument("--url", help=f"Backend base URL written to .env as {ENV_KEYS['url']}")
    parser.add_argument("--token", help=f"Bearer token written to .env as {ENV_KEYS['token']}")
    return parser.parse_args()


def _write_env(env_path: str, values: dict[str, str]) -> None:
    """Set KEY=value lines in .env, replacing existing keys and appending new ones."""
    lines: list[str] = []
    if os.path.exists(env_path):
        with open(env_path, encoding="utf-8") as f:
            lines = f.read().splitlines()

    remaining = dict(values)
    for idx, line in enumerate(lines):
        key = line.split("=", 1)[0].strip()
        if key in remaining:
            lines[idx] = f"{key}={remaining.pop(key)}"
    lines.extend(f"{key}={value}" for key, value in remaining.items())

    with open(env_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    print(f"Updated {', '.join(values)} in .env")


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    args = _parse_args()
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"
    bin_dir = os.path.join(venv_dir, "Scripts" if is_windows else "bin")
    pip = os.path.join(bin_dir, "pip")
    python = os.path.join(bin_dir, "python")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])

    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    if args.dev:
        print("Installing cloud-session in development mode...")
        subprocess.check_call([pip, "install", "-e", ".[dev]"], cwd=project_dir)
    else:
        print("Installing cloud-session...")
        subprocess.check_call([pip, "install", "."], cwd=project_dir)

    # Session store and offline queue live here (storage.db_path).
    os.makedirs(os.path.join(project_dir, "data"), exist_ok=True)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if not os.path.exists(dst_path) and os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")

    env_values = {ENV_KEYS[name]: value for name in ENV_KEYS if (value := getattr(args, name))}
    if env_values:
        _write_env(os.path.join(project_dir, ".env"), env_values)

    print()
    print("Checking configuration...")
    check = subprocess.run([python, "-m", "cloud_session", "config-check"], cwd=project_dir)

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"
    print()
    print("cloud-session installed. Next steps:")
    step = 1
    if check.returncode != 0 or not env_values.get(ENV_KEYS["url"]):
        print(f"  {step}. Edit .env - set {ENV_KEYS['url']} (and {ENV_KEYS['token']} if required)")
        step += 1
    print(f"  {step}. Activate the virtual environment: {activate_cmd}")
    print(f"  {step + 1}. Start chatting: python -m cloud_session chat")
    print("     Messages typed while offline are queued in data/ and sent on reconnect.")


if __name__ == "__main__":
    main()
