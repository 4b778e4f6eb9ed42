#!/usr/bin/env python3
"""
Test runner for the clinic records document lifecycle service.

Usage: python run_tests.py <command>
"""
import os
import shutil
import subprocess
import sys
from pathlib import Path

SOURCES = ["backend/", "storage/", "shared/"]

COMMANDS = {
    "unit": [
        ("Unit Tests", ["pytest", "test/unit/", "-v", "-m", "unit"]),
    ],
    "integration": [
        ("Integration Tests", ["pytest", "test/integration/", "-v", "-m", "integration"]),
    ],
    "all": [
        ("All Tests", ["pytest", "test/", "-v"]),
    ],
    "coverage": [
        (
            "All Tests with Coverage",
            ["pytest", "test/", *[f"--cov={s.rstrip('/')}" for s in SOURCES],
             "--cov-report=html", "--cov-report=term-missing", "-v"],
        ),
    ],
    "lint": [
        ("Flake8 Linting", ["flake8", *SOURCES, "test/"]),
        ("Import Sorting Check", ["isort", "--check-only", *SOURCES, "test/"]),
    ],
    "format": [
        ("Code Formatting with Black", ["black", *SOURCES, "test/"]),
        ("Import Sorting with isort", ["isort", *SOURCES, "test/"]),
    ],
    "type-check": [
        ("Type Checking with MyPy", ["mypy", *SOURCES]),
    ],
}

ARTIFACTS = ["htmlcov/", ".pytest_cache/", ".coverage"]


def run_module(description, args):
    cmd = [sys.executable, "-m", *args]
    print(f"\n{'=' * 60}\nRunning: {description}\nCommand: {' '.join(cmd)}\n{'=' * 60}")
    returncode = subprocess.run(cmd).returncode
    if returncode != 0:
        print(f"\n❌ {description} failed with return code {returncode}")
        return False
    print(f"\n✅ {description} completed successfully")
    return True


def clean():
    for artifact in ARTIFACTS:
        if os.path.isdir(artifact):
            shutil.rmtree(artifact)
            print(f"Removed directory: {artifact}")
        elif os.path.exists(artifact):
            os.remove(artifact)
            print(f"Removed file: {artifact}")
    return True


def usage():
    print(__doc__.strip())
    print("\nAvailable commands: " + ", ".join([*COMMANDS, "clean"]))


def main():
    if len(sys.argv) < 2:
        usage()
        sys.exit(1)

    command = sys.argv[1].lower()
    os.chdir(Path(__file__).parent)

    if command == "clean":
        success = clean()
    elif command in COMMANDS:
        # run every step even if an earlier one fails, then report overall
        results = [run_module(description, args) for description, args in COMMANDS[command]]
        success = all(results)
        if success and command == "coverage":
            print("\n📊 Coverage report generated in htmlcov/index.html")
    else:
        print(f"Unknown command: {command}")
        usage()
        success = False

    print(f"\n{'🎉' if success else '💥'} {command.title()} {'completed successfully' if success else 'failed'}!")
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
