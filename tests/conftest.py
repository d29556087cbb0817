"""Shared fixtures for the acmecron tests.

Runs with pytest.
"""
import datetime
import time
from types import SimpleNamespace

import CloudFlare
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acmecron.authority.acme import ACMEAuthority
from acmecron.modes.dns.cloudflare import ChallengeHandler

ORDER_URL = "https://ca.test/order/1"
FINALIZE_URL = "https://ca.test/order/1/finalize"
CERT_URL = "https://ca.test/cert/1"


def make_certificate(names, public_key, signing_key, issuer_cn="Test CA", subject_cn=None, san=True):
    """Build a certificate for the given names, signed by signing_key."""
    now = datetime.datetime.now(datetime.timezone.utc)
    cn = subject_cn if subject_cn is not None else (names[0] if names else "no name")
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=90))
    )
    if san and names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]), critical=False
        )
    return builder.sign(signing_key, hashes.SHA256())


@pytest.fixture
def ca_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def events():
    """Ordered log shared by the fake authority and the fake DNS provider."""
    return []


@pytest.fixture
def sleeps(monkeypatch):
    """Replace time.sleep and collect the requested delays."""
    slept = []
    monkeypatch.setattr(time, "sleep", lambda seconds: slept.append(seconds))
    return slept


class FakeDNSRecords:
    """In-memory stand-in for CloudFlare().zones.dns_records."""

    def __init__(self, events):
        self.events = events
        self.records = {}
        self.next_id = 0
        self.fail_get = False
        self.fail_post = False
        self.fail_delete = set()

    def get(self, zone_id, params=None):
        if self.fail_get:
            raise CloudFlare.exceptions.CloudFlareAPIError(9109, "Invalid access token")
        params = params or {}
        return [
            dict(record)
            for record in self.records.values()
            if record["zone_id"] == zone_id and record.get("comment") == params.get("comment")
        ]

    def post(self, zone_id, data=None):
        if self.fail_post:
            raise CloudFlare.exceptions.CloudFlareAPIError(10000, "Authentication error")
        self.next_id += 1
        record = dict(data, id="record%d" % self.next_id, zone_id=zone_id)
        self.records[record["id"]] = record
        self.events.append(("create", data["name"], data["content"]))
        return dict(record)

    def delete(self, zone_id, record_id):
        if record_id in self.fail_delete:
            raise CloudFlare.exceptions.CloudFlareAPIError(1001, "Record could not be deleted")
        record = self.records.pop(record_id)
        self.events.append(("delete", record["name"]))
        return {"id": record_id}

    def live(self, zone_id="zone1"):
        return [r for r in self.records.values() if r["zone_id"] == zone_id and r.get("comment") == "acme-challenge"]


@pytest.fixture
def dns_records(events):
    return FakeDNSRecords(events)


@pytest.fixture
def handler_config():
    return {
        "cloudflare_zone_id": "zone1",
        "cloudflare_api_token": "secret",
        "dns_verify_all_ns": "false",
        "dns_verify_waittime": 0,
        "dns_settle_time": 0,
    }


@pytest.fixture
def handler(handler_config, dns_records, sleeps):
    client = SimpleNamespace(zones=SimpleNamespace(dns_records=dns_records))
    return ChallengeHandler(handler_config, client=client)


class FakeAuthority(ACMEAuthority):
    """Scripted authority that issues certificates from the submitted CSR."""

    def __init__(self, events, ca_key, statuses=None, challenge_types=("dns-01", "http-01"), cert_names=None,
                 invalid=(), failing=()):
        ACMEAuthority.__init__(self, {}, None)
        self.events = events
        self.ca_key = ca_key
        self.statuses = statuses or {}
        self.challenge_types = challenge_types
        self.cert_names = cert_names
        self.invalid = invalid
        self.failing = failing
        self.identifiers = []
        self.issued = None

    def _call(self, *event):
        self.events.append(event)
        if event[0] in self.failing:
            raise ValueError("%s failed" % event[0])

    def register_account(self):
        self._call("register")

    def authorize_order(self, identifiers):
        self._call("order", [x["value"] for x in identifiers])
        self.identifiers = identifiers
        return {
            "_url": ORDER_URL,
            "status": "pending",
            "authorizations": ["https://ca.test/authz/%d" % i for i in range(len(identifiers))],
            "finalize": FINALIZE_URL,
        }

    def get_authorization(self, url):
        value = self.identifiers[int(url.rsplit("/", 1)[1])]["value"]
        return {
            "_url": url,
            "status": self.statuses.get(value, "pending"),
            "identifier": {"type": "dns", "value": value},
            "challenges": [
                {"type": t, "url": "%s/%s" % (url, t), "token": "token-%s" % value} for t in self.challenge_types
            ],
        }

    def accept_challenge(self, challenge):
        self._call("accept", challenge["url"])
        return {"status": "pending"}

    def wait_authorization(self, url):
        self._call("wait_authorization", url)
        if url in self.invalid:
            raise ValueError("Authorization %s did not pass (invalid)" % url)
        return {"status": "valid"}

    def wait_order(self, url):
        self._call("wait_order", url)
        return {"_url": url, "status": "ready", "finalize": FINALIZE_URL}

    def finalize_order(self, order, csr):
        self._call("finalize")
        names = self.cert_names
        if names is None:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            names = san.value.get_values_for_type(x509.DNSName)
        leaf = make_certificate(names, csr.public_key(), self.ca_key)
        ca = make_certificate([], self.ca_key.public_key(), self.ca_key, subject_cn="Test CA")
        self.issued = leaf
        return [leaf.public_bytes(serialization.Encoding.DER), ca.public_bytes(serialization.Encoding.DER)], CERT_URL

    def revoke_authorization(self, url):
        self._call("revoke_authorization", url)

    def deactivate_account(self):
        self._call("deactivate_account")

    def revoke_certificate(self, key, der, reason=None):
        self._call("revoke_certificate", reason)

    def dns01_challenge_record(self, token):
        return "txt-%s" % token


@pytest.fixture
def authority_factory(events, ca_key):
    def factory(**kwargs):
        return FakeAuthority(events, ca_key, **kwargs)

    return factory
