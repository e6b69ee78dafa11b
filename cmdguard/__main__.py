"""
cmdguard - Command Security Validator

Decides whether a shell command proposed by a coding agent should be
allowed, denied, or escalated to a human under a permission policy.

Features:
- Quote- and operator-aware shell tokenization
- Recursive handling of $(...), backticks and subshells
- Transparent wrapper unwrapping (sudo, env, xargs, find -exec, ...)
- Layered rules: deny > allow > inferred > preset

Quick Start:
    pip install -e .
    cmdguard check "ls && rm -rf /" --preset dev
"""

from cmdguard.cli.cli import main

if __name__ == "__main__":
    main()
