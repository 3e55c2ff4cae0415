"""
Output comparison used for grading.

The policy is fixed because it decides what counts as a correct answer:

1. ``\\r\\n`` and lone ``\\r`` line endings become ``\\n``.
2. Trailing whitespace is stripped from every line. Leading whitespace is kept.
3. Blank lines at the start and at the end are dropped.
4. The remaining text must match exactly.

There is no numeric tolerance and no token reordering.
"""


def normalize_output(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]

    while lines and not lines[-1]:
        lines.pop()
    start = 0
    while start < len(lines) and not lines[start]:
        start += 1

    return "\n".join(lines[start:])


def compare_output(expected: str, actual: str) -> bool:
    """Compare outputs ignoring line endings, trailing whitespace and surrounding blank lines"""
    return normalize_output(expected) == normalize_output(actual)
