from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from common.config import Paths, TakConfig, is_ipv4, load_config, split_config_arg
from common.crontab import CERTBOT
from common.logs import setup_logger
from common.system import CommandRunner, SetupError


LOGGER_NAME = "tak_renewal.request"


def certbot_command(config: TakConfig) -> List[str]:
    """certonly invocation for the configured validator (web = standalone HTTP, else manual DNS)."""
    domain = config.tak_uri or ""
    email = config.le_email or ""
    if config.le_validator == "web":
        return [CERTBOT, "certonly", "--standalone", "-d", domain, "-m", email, "--agree-tos", "--non-interactive"]
    return [CERTBOT, "certonly", "--manual", "--preferred-challenges", "dns", "-d", domain, "-m", email]


def request_certificate(config: TakConfig, *, runner: CommandRunner, paths: Paths, log: logging.Logger) -> bool:
    """Obtain the initial certificate.

    Returns False when certificates already exist (nothing requested).
    Raises SetupError on invalid configuration or a certbot failure.
    """
    if not config.tak_uri or not config.le_email:
        raise SetupError("TAK_URI and LE_EMAIL must be configured")
    if is_ipv4(config.tak_uri):
        raise SetupError(f"TAK_URI must be a domain name (FQDN), not an IP address: {config.tak_uri}")

    if paths.live_dir(config.tak_uri).is_dir():
        log.warning("LetsEncrypt certificates already exist for %s", config.tak_uri)
        log.info("To renew, run: sudo certbot renew")
        return False

    validator = "HTTP" if config.le_validator == "web" else "DNS"
    log.info("Requesting LetsEncrypt: %s Validator", validator)
    # The DNS challenge prompts for a TXT record, so certbot needs the terminal
    res = runner.run(certbot_command(config), privileged=True, interactive=True)
    if not res.ok:
        raise SetupError("Failed to obtain LetsEncrypt certificate")

    log.info("LetsEncrypt certificate obtained successfully for %s", config.tak_uri)
    log.info("Next steps:")
    log.info("1. Import the certificates: tak-le-import")
    log.info("2. Set up auto-renewal: tak-renewal-system setup")
    return True


def run_once(
    *,
    config_file: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME)
    config = load_config(config_file)
    try:
        request_certificate(config, runner=runner, paths=paths, log=log)
    except SetupError as exc:
        log.error("%s", exc)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="tak-le-request", description="Request the initial LetsEncrypt certificate.")
    parser.add_argument("args", nargs="*", metavar="[config_file]")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if rest:
        parser.print_help()
        return 1
    return run_once(config_file=config_file)


if __name__ == "__main__":
    sys.exit(main())
