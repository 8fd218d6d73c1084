#!/usr/bin/env python3
"""
Test runner for CIAM Bulk Tools.

Runs every test module in the tests directory in its own interpreter so a
module that reconfigures logging or signal handlers cannot affect the others.
"""

import os
import sys
import subprocess


def run_test_file(test_file):
    """Run a single test module and return True if it passed."""
    print(f"\n{'=' * 60}")
    print(f"Running {os.path.basename(test_file)}")
    print('=' * 60)

    result = subprocess.run([sys.executable, test_file], cwd=os.path.dirname(test_file))
    if result.returncode != 0:
        print(f"{os.path.basename(test_file)} failed with exit code {result.returncode}")
        return False
    return True


def main():
    tests_dir = os.path.dirname(os.path.abspath(__file__))
    selected = sys.argv[1:]

    test_files = sorted(
        os.path.join(tests_dir, name)
        for name in os.listdir(tests_dir)
        if name.startswith('test_') and name.endswith('.py')
        and (not selected or any(pattern in name for pattern in selected))
    )

    if not test_files:
        print("No test files found!")
        return 1

    print(f"Found {len(test_files)} test modules:")
    for test_file in test_files:
        print(f"  - {os.path.basename(test_file)}")

    failed = [test_file for test_file in test_files if not run_test_file(test_file)]

    print(f"\n{'=' * 60}")
    print("TEST SUMMARY")
    print('=' * 60)
    print(f"Modules run: {len(test_files)}")
    print(f"Passed: {len(test_files) - len(failed)}")
    print(f"Failed: {len(failed)}")
    for test_file in failed:
        print(f"  ✗ {os.path.basename(test_file)}")

    return 0 if not failed else 1


if __name__ == "__main__":
    sys.exit(main())
