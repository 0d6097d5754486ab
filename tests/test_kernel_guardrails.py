"""Guardrails to keep the kernel free of terminal I/O and outer-layer imports."""

import re
from pathlib import Path


FORBIDDEN_PATTERNS = {
    "argparse": re.compile(r"\bargparse\b"),
    "print(": re.compile(r"(?<![A-Za-z0-9_.])print\s*\("),
    "input(": re.compile(r"(?<![A-Za-z0-9_.])input\s*\("),
    "sys.exit": re.compile(r"\bsys\.exit\b"),
    "converge.cli": re.compile(r"from\s+(converge|\.\.)\.?cli\b|import\s+converge\.cli\b"),
    "converge.api": re.compile(r"from\s+(converge|\.\.)\.?api\b|import\s+converge\.api\b"),
    "converge.report": re.compile(r"from\s+(converge|\.\.)\.?report\b|import\s+converge\.report\b"),
}


def test_kernel_has_no_forbidden_tokens():
    kernel_dir = Path(__file__).resolve().parents[1] / "src" / "converge" / "kernel"
    offenders = []

    for path in kernel_dir.glob("*.py"):
        contents = path.read_text(encoding="utf-8")
        for token, pattern in FORBIDDEN_PATTERNS.items():
            if pattern.search(contents):
                offenders.append(f"{path.name}: {token}")

    assert not offenders, "Forbidden kernel tokens found: " + ", ".join(offenders)
