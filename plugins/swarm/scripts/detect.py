#!/usr/bin/env python3
"""
Execution-Mode Detection

Decides whether a run is interactive or headless from invocation flags and
environment variables. Pure functions: identical inputs give identical answers.
"""
from __future__ import annotations

from typing import Any, List, Mapping

from utils import env_flag

# Output formats that mean a machine is reading stdout
MACHINE_READABLE_FORMATS = ("stream-json", "json")

# Environment variables set by common CI providers
CI_ENV_VARS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "JENKINS_URL",
    "BUILDKITE",
    "CIRCLECI",
    "TRAVIS",
    "TF_BUILD",
    "TEAMCITY_VERSION",
    "CODEBUILD_BUILD_ID",
)


def headless_reasons(
    flags: Mapping[str, Any],
    env: Mapping[str, str],
    detect_ci: bool = True,
) -> List[str]:
    """Return the headless signals present, in a fixed order.

    Explicit flags (executor, machine-readable output format, background)
    always count. CI variables count only when detect_ci is on and the caller
    did not ask for an interactive run.
    """
    reasons = []
    if flags.get("executor") or flags.get("headless"):
        reasons.append("executor flag")
    output_format = flags.get("output_format")
    if output_format and str(output_format).lower() in MACHINE_READABLE_FORMATS:
        reasons.append(f"output format {output_format}")
    if flags.get("background"):
        reasons.append("background flag")
    if detect_ci and not flags.get("interactive"):
        for var in CI_ENV_VARS:
            if env_flag(env.get(var)):
                reasons.append(f"CI environment ({var})")
                break
    return reasons


def detect_headless(
    flags: Mapping[str, Any],
    env: Mapping[str, str],
    detect_ci: bool = True,
) -> bool:
    """True if any headless signal is present; interactive otherwise."""
    return bool(headless_reasons(flags, env, detect_ci=detect_ci))
