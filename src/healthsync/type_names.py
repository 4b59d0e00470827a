"""Map source type identifiers to stable kebab-case file-name stems.

Examples::

    resolve("HKQuantityTypeIdentifierStepCount")      -> "step-count"
    resolve("HKCategoryTypeIdentifierSleepAnalysis")  -> "sleep-analysis"
    resolve("HKQuantityTypeIdentifierVO2Max")         -> "vo2-max"
    resolve("HKWorkoutTypeIdentifier")                -> "workout"

The output ends up in upload payloads, so it must never change for a given
identifier across releases.
"""

from __future__ import annotations

# Longest / most specific first: the first match wins.
KNOWN_PREFIXES: tuple[str, ...] = (
    "HKCorrelationTypeIdentifier",
    "HKQuantityTypeIdentifier",
    "HKCategoryTypeIdentifier",
    "HKWorkoutTypeIdentifier",
    "HKDataTypeIdentifier",
)

_MARKER = "TypeIdentifier"
DEFAULT_STEM = "workout"


def resolve(identifier: str, prefixes: tuple[str, ...] = KNOWN_PREFIXES) -> str:
    """Return the kebab-case stem for a type identifier.

    Strips the most specific known prefix; failing that, everything up to and
    including the ``TypeIdentifier`` marker.  An identifier that strips to
    nothing (e.g. ``HKWorkoutTypeIdentifier``) resolves to ``"workout"``.
    """
    name = identifier
    for prefix in sorted(prefixes, key=len, reverse=True):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    else:
        marker_at = name.find(_MARKER)
        if marker_at != -1:
            name = name[marker_at + len(_MARKER):]

    kebab = camel_to_kebab(name)
    return kebab or DEFAULT_STEM


def workout_file_name(activity_name: str) -> str:
    """Return the file stem for a workout of the given activity.

    >>> workout_file_name("functionalStrengthTraining")
    'workout-functional-strength-training'
    """
    return f"workout-{camel_to_kebab(activity_name)}"


def camel_to_kebab(value: str) -> str:
    """Convert PascalCase / camelCase to kebab-case.

    A hyphen goes before an uppercase letter when the previous character is
    lowercase or a digit, or when it ends an acronym run (previous uppercase,
    next lowercase): ``SDNN`` stays whole, ``SDNew`` becomes ``sd-new``.
    """
    out: list[str] = []
    for i, ch in enumerate(value):
        if ch.isupper():
            prev = value[i - 1] if i > 0 else ""
            nxt = value[i + 1] if i + 1 < len(value) else ""
            boundary = (
                prev.islower()
                or prev.isdigit()
                or (prev.isupper() and nxt.islower())
            )
            if out and boundary:
                out.append("-")
            out.append(ch.lower())
        elif ch in " _":
            if out and out[-1] != "-":
                out.append("-")
        else:
            out.append(ch)
    return "".join(out).strip("-").lower()
