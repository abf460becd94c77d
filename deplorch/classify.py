"""
Failure classification.

Maps raw build logs and scheduler failure signals onto the small fixed
set of causes a corrective ChangeSet can target. Signatures are checked in
table order and the first match wins, so the more specific patterns (a
relative import that no longer resolves) come before the broader ones (any
unresolved module).
"""

import re
from typing import Iterable, Optional

from deplorch.schemas import FailureReason, RuntimeFailureReason, WorkloadEvent


BUILD_SIGNATURES: list[tuple[FailureReason, tuple[str, ...]]] = [
    (FailureReason.RESOURCE_EXHAUSTED, (
        r"JavaScript heap out of memory",
        r"\bOOMKilled\b",
        r"exit code:? 137\b",
        r"Cannot allocate memory",
        r"\bMemoryError\b",
        r"^Killed$",
    )),
    (FailureReason.BASE_IMAGE_INCOMPATIBLE, (
        r"manifest unknown",
        r"no matching manifest for",
        r"exec format error",
        r"GLIBC_[\d.]+' not found",
        r"unsupported platform",
        r"The engine \"node\" is incompatible",
        r"requires a different Python",
    )),
    (FailureReason.STALE_REFERENCE, (
        r"Module not found: (Error: )?Can't resolve '\.{1,2}/",
        r"Cannot find module '\.{1,2}/",
        r"Failed to resolve import \"\.{1,2}/",
        r"Could not resolve \"\.{1,2}/",
        r"ENOENT: no such file or directory",
        r"COPY failed: .*no such file or directory",
        r"ImportError: cannot import name",
    )),
    (FailureReason.DEPENDENCY_MISSING, (
        r"Module not found: (Error: )?Can't resolve '[^./]",
        r"Cannot find module '[^./]",
        r"\bModuleNotFoundError\b",
        r"No matching distribution found",
        r"npm ERR! 404",
        r"npm ERR! code ERESOLVE",
        r"Could not resolve dependency",
        r"ERR_PNPM_NO_MATCHING_VERSION",
        r"package .* is not in (GOROOT|std)",
    )),
    (FailureReason.TYPE_CHECK_FAILED, (
        r"error TS\d{4}",
        r"Type error:",
        r"is not assignable to type",
        r"Found \d+ errors? in \d+ files?",
        r"error: Incompatible types",
        r"mypy: .*error",
    )),
    (FailureReason.CONFIG_MISMATCH, (
        r"npm ERR! Missing script",
        r"Missing script: \"?build",
        r"Unknown (command|option)",
        r"command not found",
        r"unknown flag",
        r"Required build (flag|argument)",
        r"No such file or directory: '?(Dockerfile|package\.json)",
        r"Could not read package\.json",
    )),
]

_COMPILED_BUILD = [
    (reason, [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns])
    for reason, patterns in BUILD_SIGNATURES
]


def classify_build_log(log_text: Optional[str]) -> FailureReason:
    """
    Classify a failed build by its log.

    Args:
        log_text: Build log or excerpt

    Returns:
        The first matching FailureReason, or UNKNOWN
    """
    if not log_text:
        return FailureReason.UNKNOWN
    for reason, patterns in _COMPILED_BUILD:
        for pattern in patterns:
            if pattern.search(log_text):
                return reason
    return FailureReason.UNKNOWN


RUNTIME_SIGNATURES: list[tuple[RuntimeFailureReason, tuple[str, ...]]] = [
    (RuntimeFailureReason.IMAGE_UNAVAILABLE, (
        "ErrImagePull", "ImagePullBackOff", "InvalidImageName", "ErrImageNeverPull",
    )),
    (RuntimeFailureReason.CRASH_LOOP, (
        "CrashLoopBackOff", "BackOff", "Error", "OOMKilled",
    )),
    (RuntimeFailureReason.UNSCHEDULABLE, (
        "FailedScheduling", "Unschedulable", "Pending",
    )),
]


def classify_workload_events(events: Iterable[WorkloadEvent]) -> Optional[RuntimeFailureReason]:
    """
    Classify why replicas never became ready.

    Reasons are checked in RUNTIME_SIGNATURES order across all events, so an
    image pull failure wins over the crash loop it may also cause.

    Returns:
        The classified reason, UNKNOWN when events exist but none match,
        or None when there are no events at all
    """
    events = list(events)
    if not events:
        return None
    for reason, signatures in RUNTIME_SIGNATURES:
        for event in events:
            if event.reason in signatures:
                return reason
    return RuntimeFailureReason.UNKNOWN
