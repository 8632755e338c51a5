import json
from datetime import timedelta

import pytest

from ledger_operator.certificates.backup import ITERATIONS, backup_crypto, backup_secret_name
from ledger_operator.certificates.manager import (
    CertificateManager,
    EnrollmentResponse,
    decode,
    load_enroller,
    parse_signcert_secret_name,
)
from ledger_operator.errors import (
    CertificateError,
    CertificateExpiredError,
    EnrollmentError,
    NotFoundError,
)
from ledger_operator.models import CertType, ResourceKind, StatusType

from conftest import NOW, b64

WINDOW = 30 * 24 * 60 * 60


class RecordingEnroller:
    def __init__(self, sign_cert=b"NEW-CERT", keystore=b"NEW-KEY", error=None):
        self.calls = []
        self.response = EnrollmentResponse(sign_cert, keystore)
        self.error = error

    def reenroll(self, enrollment, storage_path, cert_pem, key_pem, new_key):
        self.calls.append({"enrollment": enrollment, "path": storage_path,
                           "cert": cert_pem, "key": key_pem, "new_key": new_key})
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def enroller():
    return RecordingEnroller()


@pytest.fixture
def certs(store, enroller, settings, clock):
    return CertificateManager(store, enroller, settings, clock=clock)


def _secret(store, name):
    return decode(next(iter(store.obj(ResourceKind.SECRET, "ns1", name)["data"].values())))


def test_check_deployed_when_far_from_expiry(certs, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=365), NOW + timedelta(days=365))

    assert certs.check_certificates_for_expire(instance, WINDOW) == (StatusType.DEPLOYED, "")


def test_check_warning_inside_window(certs, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=365))

    status, message = certs.check_certificates_for_expire(instance, WINDOW)

    assert status == StatusType.WARNING
    assert message.startswith("tls-peer1-signcert expires on ")
    assert "ecert" not in message


def test_check_error_when_expired(certs, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=10), NOW - timedelta(days=1))

    status, message = certs.check_certificates_for_expire(instance, WINDOW)

    assert status == StatusType.ERROR
    assert "tls-peer1-signcert expires on" in message
    assert "ecert-peer1-signcert has expired" in message


def test_check_missing_certificate_propagates(certs, make_instance):
    with pytest.raises(NotFoundError):
        certs.check_certificates_for_expire(make_instance(), WINDOW)


def test_check_unparseable_certificate(certs, store, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=365), NOW + timedelta(days=365))
    store.obj(ResourceKind.SECRET, "ns1", "tls-peer1-signcert")["data"]["cert.pem"] = b64(b"garbage")

    with pytest.raises(CertificateError, match="tls signcert"):
        certs.check_certificates_for_expire(instance, WINDOW)


def test_duration_to_next_renewal(certs, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=40), NOW + timedelta(days=29))

    assert certs.get_duration_to_next_renewal(CertType.TLS, instance, WINDOW) == timedelta(days=10).total_seconds()
    assert certs.get_duration_to_next_renewal(CertType.ECERT, instance, WINDOW) == 0.0


def test_duration_for_expired_certificate(certs, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW - timedelta(seconds=1), NOW + timedelta(days=365))

    with pytest.raises(CertificateExpiredError):
        certs.get_duration_to_next_renewal(CertType.TLS, instance, WINDOW)


def test_renew_writes_new_material(certs, store, enroller, make_instance, install_certs):
    instance = make_instance()
    pems = install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))

    certs.renew_cert(CertType.TLS, instance, new_key=True)

    call = enroller.calls[0]
    assert call["cert"] == pems["tls"]
    assert call["key"] == b"KEY-tls"
    assert call["new_key"] is True
    assert call["enrollment"].enroll_id == "peer1"
    assert call["path"].endswith("/ns1/peer1/reenroller/tls")
    assert _secret(store, "tls-peer1-signcert") == b"NEW-CERT"
    assert _secret(store, "tls-peer1-keystore") == b"NEW-KEY"
    assert _secret(store, "ecert-peer1-signcert") == pems["ecert"]
    assert [c[2] for c in store.calls_for("patch", ResourceKind.SECRET)] == [
        "tls-peer1-keystore", "tls-peer1-signcert",
    ]


def test_renew_hsm_ecert_keeps_key_on_device(certs, store, enroller, make_instance, install_certs):
    instance = make_instance(spec={"hsm": {}})
    install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))

    certs.renew_cert(CertType.ECERT, instance)

    assert enroller.calls[0]["key"] == b""
    assert _secret(store, "ecert-peer1-signcert") == b"NEW-CERT"
    assert _secret(store, "ecert-peer1-keystore") == b"KEY-ecert"


def test_renew_skips_empty_response(store, settings, clock, make_instance, install_certs):
    instance = make_instance()
    pems = install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))
    certs = CertificateManager(store, RecordingEnroller(sign_cert=b"", keystore=b""), settings, clock)

    certs.renew_cert(CertType.TLS, instance)

    assert store.calls_for("patch", ResourceKind.SECRET) == []
    assert _secret(store, "tls-peer1-signcert") == pems["tls"]


def test_renew_requires_enrollment(certs, make_instance, install_certs):
    instance = make_instance(spec={"secret": None})
    with pytest.raises(EnrollmentError, match="force renewal required"):
        certs.renew_cert(CertType.TLS, instance)

    instance = make_instance(spec={"secret": {"enrollment": {"component": {"enrollid": "peer1"}}}})
    with pytest.raises(EnrollmentError, match="no tls enrollment"):
        certs.renew_cert(CertType.TLS, instance)


def test_renew_wraps_enroller_failure(store, settings, clock, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))
    certs = CertificateManager(store, RecordingEnroller(error=RuntimeError("ca down")), settings, clock)

    with pytest.raises(EnrollmentError, match="ca down"):
        certs.renew_cert(CertType.ECERT, instance)


def test_renew_without_enroller(store, settings, clock, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))

    with pytest.raises(EnrollmentError, match="no enroller"):
        CertificateManager(store, None, settings, clock).renew_cert(CertType.TLS, instance)



def test_parse_signcert_secret_name():
    assert parse_signcert_secret_name("tls-peer-1-signcert") == (CertType.TLS, "peer-1")
    assert parse_signcert_secret_name("ecert-orderer1-signcert") == (CertType.ECERT, "orderer1")
    assert parse_signcert_secret_name("tls-peer1-keystore") is None
    assert parse_signcert_secret_name("tls--signcert") is None
    assert parse_signcert_secret_name("peer1-signcert") is None

def test_load_enroller():
    assert load_enroller("") is None
    assert load_enroller("json:loads") is json.loads
    assert isinstance(load_enroller("collections:OrderedDict"), dict)


def test_backup_keeps_last_ten(store, settings, make_instance, install_certs):
    instance = make_instance()
    install_certs(instance, NOW + timedelta(days=10), NOW + timedelta(days=10))
    labels = {"app": "peer1"}

    for _ in range(ITERATIONS + 2):
        assert backup_crypto(store, instance, labels, settings)

    secret = store.obj(ResourceKind.SECRET, "ns1", backup_secret_name(instance))
    assert secret["metadata"]["labels"] == labels
    assert secret["metadata"]["ownerReferences"] == [instance.owner_reference()]
    for key in ("tls-backup.json", "ecert-backup.json"):
        backup = json.loads(decode(secret["data"][key]))
        assert len(backup["list"]) == ITERATIONS
        assert backup["timestamp"]
    tls = json.loads(decode(secret["data"]["tls-backup.json"]))
    assert decode(tls["list"][-1]["signcerts"]) == decode(
        store.obj(ResourceKind.SECRET, "ns1", "tls-peer1-signcert")["data"]["cert.pem"]
    )


def test_backup_without_crypto(store, settings, make_instance):
    instance = make_instance()
    assert not backup_crypto(store, instance, {}, settings)
    assert store.calls_for("create") == []
