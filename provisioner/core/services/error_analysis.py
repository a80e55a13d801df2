"""
Error analysis (pure) — truncate captured output and suggest remediation.

Parses the output of a failed step for known patterns. No I/O, no
subprocess.
"""

from __future__ import annotations

import re

ERROR_OUTPUT_MAX_LENGTH = 2000
TRUNCATED_SUFFIX = "... [truncated]"


def truncate_output(output: str, limit: int = ERROR_OUTPUT_MAX_LENGTH) -> str:
    """Keep the first *limit* characters of *output*, marking any cut."""
    if not output or len(output) <= limit:
        return output or ""
    return output[:limit] + TRUNCATED_SUFFIX


def analyse_failure(output: str) -> dict | None:
    """Match failure output against common provisioning errors.

    Returns:
        ``{"cause": "...", "suggestion": "..."}`` or ``None`` if the
        error is unrecognized.
    """
    if not output:
        return None

    s = output.lower()

    # apt/dpkg lock held by unattended-upgrades or another apt
    if "could not get lock" in s or "dpkg frontend lock" in s or "dpkg was interrupted" in s:
        return {
            "cause": "Package manager is locked or was interrupted",
            "suggestion": "Wait for other apt processes to finish, then run 'sudo dpkg --configure -a'",
        }

    # DNS
    if "could not resolve host" in s or "temporary failure in name resolution" in s:
        return {
            "cause": "DNS resolution failed",
            "suggestion": "Check /etc/resolv.conf and network connectivity, then resume",
        }

    # Disk
    if "no space left on device" in s:
        return {
            "cause": "Disk full",
            "suggestion": "Free disk space (e.g. 'sudo apt-get clean', remove old logs), then resume",
        }

    # Checksum from the verified installer
    if "checksum mismatch" in s or "sha256 mismatch" in s:
        return {
            "cause": "Installer checksum did not match",
            "suggestion": "The upstream installer changed; update the pinned checksum before retrying",
        }

    # HTTP client errors
    m = re.search(r"(?:http|error:?)\s*(4\d\d)\b", s)
    if m or "the requested url returned error: 4" in s:
        code = m.group(1) if m else "4xx"
        return {
            "cause": f"Upstream returned HTTP {code}",
            "suggestion": "The download URL is wrong or was removed upstream; retrying will not help",
        }

    if "sudo: a password is required" in s or "sudo: a terminal is required" in s:
        return {
            "cause": "sudo needs a password",
            "suggestion": "Configure passwordless sudo for the install user or run as root",
        }

    if "permission denied" in s:
        return {
            "cause": "Permission denied",
            "suggestion": "The step may need root; check file ownership under the target home",
        }

    return None
