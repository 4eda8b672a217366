"""Import LetsEncrypt certificates into the TAK Server keystores.

TAK Server reads Java keystores, so the PEM pair from `/etc/letsencrypt/live`
is converted into `letsencrypt.p12` (built with `cryptography`) and then into
`letsencrypt.jks` with the JDK `keytool`. The ISRG Root X1 certificate is
added to the client truststore bundle so devices trust the new server chain.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from common.config import Paths, TakConfig, load_config, split_config_arg
from common.logs import setup_logger
from common.system import CommandRunner


LOGGER_NAME = "tak_renewal.import"

ISRG_ROOT_URL = "https://letsencrypt.org/certs/isrgrootx1.pem"
KEY_ALIAS = "letsencrypt"
BUNDLE_ALIAS = "lebundle"
ROOT_ALIAS = "letsencrypt-root"


class CertificateImportError(RuntimeError):
    """A step of the keystore import failed."""


def certs_base_dir(config: TakConfig) -> Path:
    """Directory holding the TAK `files/` certificate folder.

    docker installs keep certificates in the tak-pack tree, which is created on
    demand; other installs must already have `<RELEASE_PATH>/tak/certs`.
    """
    if config.installer == "docker":
        if not config.root_path:
            raise CertificateImportError("ROOT_PATH not configured")
        base = Path(config.root_path) / "tak-pack" / "certs"
        try:
            (base / "files").mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CertificateImportError(f"Cannot create {base / 'files'}: {exc}") from exc
        return base
    if not config.release_path:
        raise CertificateImportError("RELEASE_PATH not configured")
    base = Path(config.release_path) / "tak" / "certs"
    if not base.is_dir():
        raise CertificateImportError(f"TAK certs directory not found: {base}")
    try:
        (base / "files").mkdir(exist_ok=True)
    except OSError as exc:
        raise CertificateImportError(f"Cannot create {base / 'files'}: {exc}") from exc
    return base


def keytool_path(config: TakConfig) -> str:
    if config.root_path:
        bundled = Path(config.root_path) / "jdk" / "bin" / "keytool"
        if bundled.is_file():
            return str(bundled)
    return "keytool"


def build_pkcs12(chain_pem: bytes, key_pem: bytes, password: str, alias: str = KEY_ALIAS) -> bytes:
    """PKCS12 bundle of the leaf certificate, its private key and the intermediates."""
    try:
        certs = x509.load_pem_x509_certificates(chain_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except ValueError as exc:
        raise CertificateImportError(f"Invalid certificate or key: {exc}") from exc
    return pkcs12.serialize_key_and_certificates(
        name=alias.encode(),
        key=key,
        cert=certs[0],
        cas=certs[1:] or None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )


def download_root(
    client: httpx.Client,
    url: str = ISRG_ROOT_URL,
    *,
    max_attempts: int = 3,
    sleep=time.sleep,
) -> bytes:
    attempt = 0
    backoff = 1.0
    last_exc: Optional[Exception] = None
    while attempt < max_attempts:
        try:
            resp = client.get(url)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_exc = exc
        else:
            if resp.status_code == 200:
                if b"BEGIN CERTIFICATE" not in resp.content:
                    raise CertificateImportError(f"Unexpected content from {url}")
                return resp.content
            if resp.status_code not in (429, 500, 502, 503, 504):
                raise CertificateImportError(f"HTTP {resp.status_code} downloading {url}")
        attempt += 1
        if attempt < max_attempts:
            sleep(backoff)
            backoff = min(backoff * 2, 8.0)
    raise CertificateImportError("Failed to download LetsEncrypt root certificate") from last_exc


def import_certificates(
    config: TakConfig,
    *,
    runner: CommandRunner,
    paths: Paths,
    log: logging.Logger,
    http_client: Optional[httpx.Client] = None,
) -> Path:
    """Run the full import and return the `files/` directory that was updated."""
    if not config.tak_uri:
        raise CertificateImportError("TAK_URI not configured")
    live = paths.live_dir(config.tak_uri)
    if not live.is_dir():
        raise CertificateImportError(f"LetsEncrypt certificates not found for domain {config.tak_uri}")
    if not config.ca_pass:
        raise CertificateImportError("CA_PASS not configured")
    if not config.tak_ca_file:
        raise CertificateImportError("TAK_CA_FILE not configured")
    password = config.ca_pass

    files = certs_base_dir(config) / "files"
    pem = files / "letsencrypt.pem"
    key = files / "letsencrypt.key.pem"
    p12 = files / "letsencrypt.p12"
    jks = files / "letsencrypt.jks"
    root = files / "letsencrypt-root.pem"

    for src, dst in ((live / "fullchain.pem", pem), (live / "privkey.pem", key)):
        try:
            shutil.copyfile(src, dst)
        except OSError as exc:
            raise CertificateImportError(f"Failed to copy {src.name}: {exc}") from exc

    log.info("Importing LetsEncrypt Certificate")
    _write(p12, build_pkcs12(pem.read_bytes(), key.read_bytes(), password))

    keytool = keytool_path(config)
    # A keystore left from the previous renewal would reject the bundle alias
    try:
        jks.unlink(missing_ok=True)
    except OSError as exc:
        raise CertificateImportError(f"Cannot remove old keystore {jks.name}: {exc}") from exc
    _keytool(
        runner,
        [
            keytool, "-importkeystore", "-noprompt",
            "-srckeystore", str(p12), "-srcstorepass", password,
            "-destkeystore", str(jks), "-deststorepass", password,
            "-srcstoretype", "PKCS12",
        ],
        "Failed to import keystore",
    )
    _keytool(
        runner,
        [
            keytool, "-import", "-noprompt", "-alias", BUNDLE_ALIAS, "-trustcacerts",
            "-file", str(pem), "-srcstorepass", password,
            "-keystore", str(jks), "-deststorepass", password,
        ],
        "Failed to import certificate bundle",
    )

    log.info("Adding LetsEncrypt Root to Bundled Truststore")
    owns_client = http_client is None
    client = http_client or httpx.Client(timeout=30.0, follow_redirects=True)
    try:
        _write(root, download_root(client))
    finally:
        if owns_client:
            client.close()

    truststore = files / f"truststore-{config.tak_ca_file}-bundle.p12"
    # Re-imports fail on an existing alias; drop it first (absent on the first run)
    runner.run(
        [keytool, "-delete", "-alias", ROOT_ALIAS,
         "-keystore", str(truststore), "-storetype", "PKCS12", "-storepass", password]
    )
    _keytool(
        runner,
        [
            keytool, "-import", "-noprompt", "-alias", ROOT_ALIAS,
            "-file", str(root), "-keystore", str(truststore),
            "-storetype", "PKCS12", "-storepass", password,
        ],
        "Failed to import LetsEncrypt root certificate to truststore",
    )

    try:
        for p in files.glob("letsencrypt.*"):
            p.chmod(0o644)
    except OSError as exc:
        raise CertificateImportError(f"Failed to set certificate file permissions: {exc}") from exc

    log.info("LetsEncrypt certificates imported successfully")
    return files


def _write(path: Path, data: bytes) -> None:
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise CertificateImportError(f"Failed to write {path.name}: {exc}") from exc


def _keytool(runner: CommandRunner, args: List[str], failure: str) -> None:
    res = runner.run(args)
    if not res.ok:
        detail = res.stderr.strip() or res.stdout.strip()
        raise CertificateImportError(f"{failure}: {detail[:200]}" if detail else failure)


def run_once(
    *,
    config_file: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
    http_client: Optional[httpx.Client] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME)
    config = load_config(config_file)
    try:
        import_certificates(config, runner=runner, paths=paths, log=log, http_client=http_client)
    except CertificateImportError as exc:
        log.error("%s", exc)
        return 1
    log.info("Next steps:")
    log.info("1. Restart TAK Server to use new certificates")
    log.info("2. Set up auto-renewal: tak-renewal-system setup")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-le-import", description="Import LetsEncrypt certificates into the TAK Server keystores."
    )
    parser.add_argument("args", nargs="*", metavar="[config_file]")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if rest:
        parser.print_help()
        return 1
    return run_once(config_file=config_file)


if __name__ == "__main__":
    sys.exit(main())
