#!/usr/bin/env python3
"""
LLM Gateway Test Runner

Usage:
    python -m tests.run_tests           # Run all tests
    python -m tests.run_tests unit      # Run unit tests only
    python -m tests.run_tests oauth     # Run OAuth tests only
    python -m tests.run_tests integration  # Run tests against an in-process MCP server
"""

import sys
import subprocess
from pathlib import Path

SUITES = {
    "unit": "🧪 unit",
    "oauth": "🔐 OAuth",
    "integration": "🔌 live MCP server",
}


def run_suite(name):
    """Run one test directory with pytest; returns True on success"""
    suite_dir = Path(__file__).parent / name
    print(f"\n{SUITES[name]} tests...")
    if not suite_dir.exists():
        print(f"📝 No {name} tests found")
        return True
    result = subprocess.run([sys.executable, "-m", "pytest", str(suite_dir), "-v"])
    if result.returncode != 0:
        print(f"❌ {name} tests failed")
        return False
    print(f"✅ {name} tests passed")
    return True


def run_tests(test_type="all"):
    if test_type == "all":
        print("🧪 Running all gateway tests...")
        results = [run_suite(name) for name in SUITES]
    elif test_type in SUITES:
        results = [run_suite(test_type)]
    else:
        print(f"❌ Unknown test type: {test_type}")
        print(f"Available types: all, {', '.join(SUITES)}")
        sys.exit(1)
    if not all(results):
        sys.exit(1)


if __name__ == "__main__":
    test_type = sys.argv[1] if len(sys.argv) > 1 else "all"
    run_tests(test_type)
