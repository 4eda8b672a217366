from __future__ import annotations

import logging
from typing import List

import httpx
import pytest
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from common.system import CommandResult
from renewal import importer
from renewal.importer import CertificateImportError


LOG = logging.getLogger("test.import")
ROOT_PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def _live(paths, make_cert):
    live = paths.live_dir("tak.example.com")
    make_cert(live / "fullchain.pem", days=89, key_path=live / "privkey.pem")
    return live


def _http(status: int = 200, body: bytes = ROOT_PEM, seen: List[str] = None) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        return httpx.Response(status, content=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _keytool_calls(host):
    return [c for c in host.calls if c[0].endswith("keytool")]


def test_import_builds_keystores(host, paths, config, make_cert):
    _live(paths, make_cert)
    config.tak_certs_files.parent.mkdir(parents=True)
    seen: List[str] = []

    files = importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http(seen=seen))

    assert files == config.tak_certs_files
    pem = (files / "letsencrypt.pem").read_bytes()
    assert pem == (paths.live_dir("tak.example.com") / "fullchain.pem").read_bytes()
    assert (files / "letsencrypt.key.pem").exists()
    assert (files / "letsencrypt-root.pem").read_bytes() == ROOT_PEM
    assert seen == [importer.ISRG_ROOT_URL]

    key, cert, extra = pkcs12.load_key_and_certificates((files / "letsencrypt.p12").read_bytes(), b"atakatak")
    assert key is not None
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "tak.example.com"

    calls = _keytool_calls(host)
    verbs = [(c[1], c[c.index("-alias") + 1] if "-alias" in c else None) for c in calls]
    assert verbs == [
        ("-importkeystore", None),
        ("-import", "lebundle"),
        ("-delete", "letsencrypt-root"),
        ("-import", "letsencrypt-root"),
    ]
    assert str(files / "truststore-tak-ca-bundle.p12") in calls[-1]
    assert oct((files / "letsencrypt.pem").stat().st_mode & 0o777) == "0o644"


def test_bundled_keytool_is_preferred(host, paths, config, make_cert):
    _live(paths, make_cert)
    config.tak_certs_files.parent.mkdir(parents=True)
    keytool = importer.keytool_path(config)
    assert keytool == "keytool"

    bundled = paths.bin_dir.parent / "root" / "jdk" / "bin" / "keytool"
    bundled.parent.mkdir(parents=True)
    bundled.write_text("")
    assert importer.keytool_path(config) == str(bundled)

    importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http())
    assert all(c[0] == str(bundled) for c in _keytool_calls(host))


def test_docker_target_is_created(host, paths, config, make_cert):
    _live(paths, make_cert)
    cfg = config.model_copy(update={"installer": "docker"})

    files = importer.import_certificates(cfg, runner=host, paths=paths, log=LOG, http_client=_http())

    assert files == paths.bin_dir.parent / "root" / "tak-pack" / "certs" / "files"
    assert (files / "letsencrypt.p12").exists()


def test_missing_release_certs_dir(host, paths, config, make_cert):
    _live(paths, make_cert)
    with pytest.raises(CertificateImportError, match="TAK certs directory not found"):
        importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http())


def test_missing_live_certificates(host, paths, config):
    with pytest.raises(CertificateImportError, match="not found for domain"):
        importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http())


def test_keytool_failure(host, paths, config, make_cert):
    _live(paths, make_cert)
    config.tak_certs_files.parent.mkdir(parents=True)
    host.scripted[("keytool", "-importkeystore")] = CommandResult(1, stderr="keystore password was incorrect")

    with pytest.raises(CertificateImportError, match="Failed to import keystore: keystore password"):
        importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http())


def test_root_download_failure(host, paths, config, make_cert):
    _live(paths, make_cert)
    config.tak_certs_files.parent.mkdir(parents=True)
    with pytest.raises(CertificateImportError, match="HTTP 404"):
        importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http(status=404))


def test_download_root_retries_transient():
    calls = {"n": 0}
    sleeps: List[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(502)
        return httpx.Response(200, content=ROOT_PEM)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    assert importer.download_root(client, sleep=sleeps.append) == ROOT_PEM
    assert sleeps == [1.0, 2.0]


def test_download_root_rejects_non_pem():
    with pytest.raises(CertificateImportError, match="Unexpected content"):
        importer.download_root(_http(body=b"<html>maintenance</html>"), sleep=lambda _s: None)


def test_build_pkcs12_rejects_garbage():
    with pytest.raises(CertificateImportError):
        importer.build_pkcs12(b"nope", b"nope", "pw")


def test_unwritable_keystore_is_an_import_error(host, paths, config, make_cert):
    _live(paths, make_cert)
    config.tak_certs_files.mkdir(parents=True)
    (config.tak_certs_files / "letsencrypt.p12").mkdir()

    with pytest.raises(CertificateImportError, match="Failed to write letsencrypt.p12"):
        importer.import_certificates(config, runner=host, paths=paths, log=LOG, http_client=_http())
    assert _keytool_calls(host) == []
