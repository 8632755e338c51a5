import threading
from datetime import timedelta

import pytest

from ledger_operator.certificates.manager import CertificateManager, EnrollmentResponse, decode
from ledger_operator.certificates.timers import RenewalTimerCoordinator, cert_status_reason
from ledger_operator.errors import CertificateExpiredError
from ledger_operator.models import CertType, ComponentKind, Instance, ResourceKind, StatusType, Update

from conftest import NOW, make_cert, node_body


class Enroller:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    def reenroll(self, enrollment, storage_path, cert_pem, key_pem, new_key):
        self.calls += 1
        if self.fail:
            raise RuntimeError("enrollment refused")
        return EnrollmentResponse(make_cert(NOW + timedelta(days=365)), b"RENEWED-KEY")


@pytest.fixture
def enroller():
    return Enroller()


@pytest.fixture
def deployed(store, install_certs):
    body = node_body(status={"type": "Deployed", "reason": "allPodsDeployed", "message": ""})
    store.add_instance(body)
    instance = Instance.from_body(body)
    install_certs(instance, NOW + timedelta(days=29), NOW + timedelta(days=200))
    return instance


def _timers(store, enroller, settings, clock, timer_factory):
    certs = CertificateManager(store, enroller, settings, clock=clock)
    return RenewalTimerCoordinator(store, certs, timer_factory=timer_factory, settings=settings)


def test_one_live_timer_per_certificate(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)

    timers.set_certificate_timer(deployed, CertType.TLS)
    timers.set_certificate_timer(deployed, CertType.TLS)

    first, second = timer_factory.timers
    assert first.cancelled
    assert second.started and not second.cancelled
    assert timers.live_timers() == [(deployed.key, CertType.TLS)]


def test_timer_inside_window_fires_immediately(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)

    timers.set_certificate_timer(deployed, CertType.TLS)
    timers.set_certificate_timer(deployed, CertType.ECERT)

    tls, ecert = timer_factory.timers
    assert tls.interval == 0
    assert ecert.interval == timedelta(days=170).total_seconds()
    assert tls.args == (ComponentKind.PEER, "ns1", "peer1", CertType.TLS)


def test_fire_renews_once_and_writes_status(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    timers.set_certificate_timer(deployed, CertType.TLS)

    timer_factory.timers[0].fire()

    assert enroller.calls == 1
    assert len(store.status_patches) == 1
    kind, ns, name, status = store.status_patches[0]
    assert (kind, ns, name) == (ComponentKind.PEER, "ns1", "peer1")
    assert status["type"] == StatusType.WARNING.value
    assert status["reason"] == "certRenewalRequired"
    assert "tls-peer1-signcert" in status["message"]

    assert decode(store.obj(ResourceKind.SECRET, "ns1", "tls-peer1-keystore")["data"]["key.pem"]) == b"RENEWED-KEY"
    backup = store.obj(ResourceKind.SECRET, "ns1", "peer1-crypto-backup")
    assert set(backup["data"]) == {"tls-backup.json", "ecert-backup.json"}
    assert timers.live_timers() == []


def test_failed_renewal_leaves_warning(store, settings, clock, timer_factory, deployed):
    enroller = Enroller(fail=True)
    timers = _timers(store, enroller, settings, clock, timer_factory)
    timers.set_certificate_timer(deployed, CertType.TLS)
    keystore = store.obj(ResourceKind.SECRET, "ns1", "tls-peer1-keystore")["data"]["key.pem"]

    timer_factory.timers[0].fire()

    assert enroller.calls == 1
    assert store.instances[(ComponentKind.PEER, "ns1", "peer1")]["status"]["type"] == "Warning"
    assert store.obj(ResourceKind.SECRET, "ns1", "tls-peer1-keystore")["data"]["key.pem"] == keystore


def test_fire_for_deleted_instance_does_nothing(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    timers.set_certificate_timer(deployed, CertType.TLS)
    store.instances.clear()

    timer_factory.timers[0].fire()

    assert enroller.calls == 0
    assert store.status_patches == []


def test_status_write_skipped_when_current(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)

    assert timers.update_cr_status(ComponentKind.PEER, "ns1", "peer1")
    assert not timers.update_cr_status(ComponentKind.PEER, "ns1", "peer1")
    assert len(store.status_patches) == 1


def test_needs_timer_tracks_certificate_changes(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    assert timers.needs_timer(deployed, CertType.TLS)

    timers.set_certificate_timer(deployed, CertType.TLS)
    timer_factory.timers[0].fired = True
    assert not timers.needs_timer(deployed, CertType.TLS)

    timers.cert_manager.renew_cert(CertType.TLS, deployed)
    assert timers.needs_timer(deployed, CertType.TLS)


def test_expired_certificate_gets_no_timer(store, enroller, settings, clock, timer_factory, install_certs):
    instance = Instance.from_body(node_body())
    install_certs(instance, NOW - timedelta(days=1), NOW + timedelta(days=200))
    timers = _timers(store, enroller, settings, clock, timer_factory)

    with pytest.raises(CertificateExpiredError):
        timers.set_certificate_timer(instance, CertType.TLS)
    assert timer_factory.timers == []


def test_can_set_timer_waits_for_deployment(store, enroller, settings, clock, timer_factory):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    deploying = Instance.from_body(node_body(status={"type": "Deploying"}))
    warning = Instance.from_body(node_body(status={"type": "Warning"}))
    created = Update(certificates_created=[CertType.TLS, CertType.ECERT])

    assert not timers.can_set_certificate_timer(deploying, created)
    assert not timers.can_set_certificate_timer(deploying, Update(tls_updated=True))
    assert timers.can_set_certificate_timer(warning, created)
    assert timers.can_set_certificate_timer(deploying, Update())


def test_cancel_all(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    timers.set_certificate_timer(deployed, CertType.TLS)
    timers.set_certificate_timer(deployed, CertType.ECERT)

    timers.cancel_all(deployed)

    assert all(t.cancelled for t in timer_factory.timers)
    assert timers.live_timers() == []
    assert timers.needs_timer(deployed, CertType.TLS)



def test_concurrent_rearm_leaves_one_live_timer(store, enroller, settings, clock, timer_factory, deployed):
    timers = _timers(store, enroller, settings, clock, timer_factory)
    seen = []

    def rearm():
        for _ in range(25):
            timers.set_certificate_timer(deployed, CertType.TLS)
            seen.append(timers.live_timers())

    workers = [threading.Thread(target=rearm) for _ in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert len(timer_factory.timers) == 100
    assert sum(t.is_alive() for t in timer_factory.timers) == 1
    assert timers.live_timers() == [(deployed.key, CertType.TLS)]
    assert all(live == [(deployed.key, CertType.TLS)] for live in seen)

    timers.cancel_all(deployed)
    assert not any(t.is_alive() for t in timer_factory.timers)

def test_status_reason():
    assert cert_status_reason(StatusType.DEPLOYED) == "allPodsDeployed"
    assert cert_status_reason(StatusType.ERROR) == "certRenewalRequired"
