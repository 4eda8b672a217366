from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from common.config import ConfigIssue, TakConfig, load_config, split_config_arg, validate_letsencrypt
from common.system import hostname


EXIT_PASS = 0
EXIT_FAIL = 1

_MARKS = {"ERROR": "✗", "WARNING": "⚠"}


def summarize(issues: List[ConfigIssue]) -> Dict[str, int]:
    return {
        "errors": sum(1 for i in issues if i.level == "ERROR"),
        "warnings": sum(1 for i in issues if i.level == "WARNING"),
    }


def json_report(config: TakConfig, issues: List[ConfigIssue], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now().astimezone()
    counts = summarize(issues)
    return {
        "timestamp": now.isoformat(timespec="seconds"),
        "hostname": hostname(),
        "validation_summary": {**counts, "status": "PASS" if counts["errors"] == 0 else "FAIL"},
        "issues": [
            {"level": i.level, "variable": i.variable, "message": i.message, "suggestion": i.suggestion}
            for i in issues
        ],
        "environment_variables": {
            "TAK_URI": config.tak_uri or "",
            "INSTALLER": config.installer or "",
            "LETSENCRYPT": "true" if config.letsencrypt else "false",
            "LE_VALIDATOR": config.le_validator,
        },
    }


def text_report(config: TakConfig, issues: List[ConfigIssue], *, quiet: bool = False) -> List[str]:
    lines: List[str] = []
    if not quiet:
        lines += ["TAK Server Environment Validation", "=================================", ""]
        if config.source:
            lines.append(f"Config file: {config.source}")
    for issue in issues:
        lines.append(f"{_MARKS[issue.level]} {issue.variable}: {issue.message}")
        if issue.suggestion:
            lines.append(f"  Suggestion: {issue.suggestion}")
    if quiet:
        return lines

    counts = summarize(issues)
    lines += [
        "",
        "================================",
        "Validation Summary",
        "================================",
        f"Errors: {counts['errors']}",
        f"Warnings: {counts['warnings']}",
        "",
    ]
    if counts["errors"] == 0:
        lines += ["✓ Environment validation PASSED", "", "Next step: tak-le-request"]
    else:
        lines += ["✗ Environment validation FAILED", "", "Please fix the errors above before running setup."]
    if counts["warnings"]:
        lines += ["", f"Note: {counts['warnings']} warning(s) found - review recommendations above"]
    return lines


def run_once(*, config_file: Optional[str] = None, as_json: bool = False, quiet: bool = False) -> int:
    config = load_config(config_file)
    issues = validate_letsencrypt(config)
    if as_json:
        print(json.dumps(json_report(config, issues), indent=2))
    else:
        for line in text_report(config, issues, quiet=quiet):
            print(line)
    return EXIT_FAIL if summarize(issues)["errors"] else EXIT_PASS


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-validate-env",
        description="Validate the LetsEncrypt settings in config.inc.sh and the environment.",
        epilog="exit codes: 0 all validations passed, 1 validation errors found, 2 invalid arguments",
    )
    parser.add_argument("args", nargs="*", metavar="[config_file]")
    parser.add_argument("-j", "--json", action="store_true", help="Output validation results in JSON format")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only show errors and warnings")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if rest:
        parser.error(f"unrecognized arguments: {' '.join(rest)}")
    return run_once(config_file=config_file, as_json=ns.json, quiet=ns.quiet)


if __name__ == "__main__":
    sys.exit(main())
