"""Tests for the renewal scheduler in acmecron."""
import os
import stat
import subprocess
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

import acmecron
from acmecron.order import RunResult
from acmecron.tools import Deadline

from .conftest import CERT_URL, make_certificate


@pytest.mark.parametrize(
    "now,expected",
    [
        (datetime(2024, 3, 15, 10, 0), datetime(2024, 4, 1, 0, 0)),
        (datetime(2024, 12, 20, 23, 59), datetime(2025, 1, 1, 0, 0)),
        (datetime(2024, 1, 31, 12, 30, 5, 7), datetime(2024, 2, 1, 0, 0)),
        (datetime(2024, 4, 1, 0, 0), datetime(2024, 5, 1, 0, 0)),
    ],
)
def test_next_run_time(now, expected):
    assert acmecron.next_run_time(now) == expected


def test_next_run_time_keeps_timezone():
    tz = timezone(timedelta(hours=2))
    assert acmecron.next_run_time(datetime(2024, 3, 15, 10, 0, tzinfo=tz)) == datetime(2024, 4, 1, tzinfo=tz)


def test_sleep_until_past_time_returns_immediately(sleeps):
    acmecron.sleep_until(datetime.now() - timedelta(seconds=1))
    assert sleeps == []


@pytest.fixture
def result(ca_key):
    key = ec.generate_private_key(ec.SECP256R1())
    leaf = make_certificate(["example.com"], key.public_key(), ca_key)
    ca = make_certificate([], ca_key.public_key(), ca_key, subject_cn="Test CA")
    chain = [leaf.public_bytes(serialization.Encoding.DER), ca.public_bytes(serialization.Encoding.DER)]
    return RunResult(key, "https://ca.test/cert/1", chain, [])


def test_cert_store_writes_key_and_chain(tmp_path, result):
    settings = {"key_file": str(tmp_path / "ssl.key"), "cert_file": str(tmp_path / "ssl.cer")}
    acmecron.cert_store(result, settings)

    with open(settings["key_file"], "rb") as f:
        key = serialization.load_pem_private_key(f.read(), None)
    assert key.private_numbers() == result.key.private_numbers()
    assert stat.S_IMODE(os.stat(settings["key_file"]).st_mode) == stat.S_IREAD

    with open(settings["cert_file"], "rb") as f:
        certs = x509.load_pem_x509_certificates(f.read())
    assert [c.public_bytes(serialization.Encoding.DER) for c in certs] == result.chain

    # a second run replaces the read-only key
    acmecron.cert_store(result, settings)


def test_cert_store_downloads_without_chain(tmp_path, result, monkeypatch):
    downloads = []
    monkeypatch.setattr(acmecron.tools, "download_file", lambda url, path, deadline=None: downloads.append((url, path)))
    result.chain = []
    settings = {"key_file": str(tmp_path / "ssl.key"), "cert_file": str(tmp_path / "ssl.cer")}
    acmecron.cert_store(result, settings)
    assert downloads == [("https://ca.test/cert/1", settings["cert_file"])]


def test_cert_store_download_failure_is_fatal(tmp_path, result, monkeypatch):
    def fail(url, path, deadline=None):
        raise IOError("bad status")

    monkeypatch.setattr(acmecron.tools, "download_file", fail)
    result.chain = []
    with pytest.raises(IOError):
        acmecron.cert_store(result, {"key_file": str(tmp_path / "k"), "cert_file": str(tmp_path / "c")})


@pytest.fixture
def calls(monkeypatch):
    recorded = []

    def call(args, timeout=None):
        recorded.append((args, timeout))
        return returncodes.pop(0)

    returncodes = []
    monkeypatch.setattr(subprocess, "call", call)
    return recorded, returncodes


def test_hook_not_configured(calls):
    assert acmecron.run_hook(None) is False
    assert calls[0] == []


def test_hook_missing(tmp_path, calls, capsys):
    assert acmecron.run_hook(str(tmp_path / "missing.sh")) is False
    assert calls[0] == []
    assert "does not exist" in capsys.readouterr().err


def test_hook_retries_with_backoff(tmp_path, calls, sleeps):
    hook = tmp_path / "hook.sh"
    hook.write_text("#!/bin/sh\n")
    recorded, returncodes = calls
    returncodes.extend([1, 1, 0])
    assert acmecron.run_hook(str(hook), attempts=5, delay=1) is True
    assert [args for args, _ in recorded] == [[str(hook)]] * 3
    assert all(0 < timeout <= acmecron.HOOK_WINDOW for _, timeout in recorded)
    assert sleeps == [1, 2]


def test_hook_gives_up_after_attempts(tmp_path, calls, sleeps, capsys):
    hook = tmp_path / "hook.sh"
    hook.write_text("#!/bin/sh\n")
    recorded, returncodes = calls
    returncodes.extend([1, 1])
    assert acmecron.run_hook(str(hook), attempts=2, delay=1) is False
    assert len(recorded) == 2
    assert sleeps == [1]
    assert "Giving up" in capsys.readouterr().err


def test_main_runs_once(tmp_path, monkeypatch, result):
    config = tmp_path / "config.yml"
    config.write_text("domains: [example.com]\nCLOUDFLARE_API_TOKEN: t\nCLOUDFLARE_ZONE_ID: z\nAFTER_SETUP_SCRIPT: /x\n")
    runs = []
    hooks = []
    monkeypatch.setattr(acmecron, "cert_get", lambda settings: runs.append(settings["domains"]) or result)
    monkeypatch.setattr(acmecron, "run_hook", lambda path, attempts, delay: hooks.append(path))
    acmecron.main(["-c", str(config), "--once"])
    assert runs == [["example.com"]]
    assert hooks == ["/x"]


def test_main_schedules_next_run(tmp_path, monkeypatch, result):
    config = tmp_path / "config.yml"
    config.write_text("domains: [example.com]\nCLOUDFLARE_API_TOKEN: t\nCLOUDFLARE_ZONE_ID: z\n")
    runs = []
    waits = []

    def cert_get(settings):
        runs.append(1)
        if len(runs) == 2:
            raise RuntimeError("stop")
        return result

    monkeypatch.setattr(acmecron, "cert_get", cert_get)
    monkeypatch.setattr(acmecron, "sleep_until", waits.append)
    with pytest.raises(SystemExit) as E:
        acmecron.main(["-c", str(config)])
    assert E.value.code == 1
    assert len(runs) == 2
    assert len(waits) == 1
    assert waits[0].day == 1 and waits[0].hour == 0 and waits[0] > datetime.now()


def test_main_exits_on_bad_config(tmp_path, capsys):
    with pytest.raises(SystemExit) as E:
        acmecron.main(["-c", str(tmp_path / "missing.yml")])
    assert E.value.code == 1
    assert "Could not load configuration" in capsys.readouterr().err


def test_cert_get_issues_and_stores(tmp_path, monkeypatch, authority_factory, handler, dns_records, events):
    acme = authority_factory()
    created = []

    def make_authority(settings, deadline):
        created.append(deadline)
        return acme

    monkeypatch.setattr(acmecron, "authority", make_authority)
    monkeypatch.setattr(acmecron, "challenge_handler", lambda settings: handler)
    settings = {
        "domains": ["example.com", "www.example.com"],
        "run_timeout": 600,
        "challenge_type": "dns-01",
        "revoke_issued_certificate": False,
        "key_file": str(tmp_path / "ssl.key"),
        "cert_file": str(tmp_path / "ssl.cer"),
    }
    result = acmecron.cert_get(settings)

    assert result.ok
    assert result.certificate_url == CERT_URL
    assert isinstance(created[0], Deadline)
    assert ("order", ["example.com", "www.example.com"]) in events
    assert not any(e[0] == "revoke_certificate" for e in events)
    assert dns_records.live() == []

    with open(settings["key_file"], "rb") as f:
        key = serialization.load_pem_private_key(f.read(), None)
    assert key.private_numbers() == result.key.private_numbers()
    with open(settings["cert_file"], "rb") as f:
        leaf = x509.load_pem_x509_certificates(f.read())[0]
    san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(x509.DNSName) == ["example.com", "www.example.com"]


def test_main_warns_about_soft_errors(tmp_path, monkeypatch, result, capsys):
    config = tmp_path / "config.yml"
    config.write_text("domains: [example.com]\nCLOUDFLARE_API_TOKEN: t\nCLOUDFLARE_ZONE_ID: z\n")
    result.errors = [ValueError("Could not deactivate account")]
    monkeypatch.setattr(acmecron, "cert_get", lambda settings: result)
    acmecron.main(["-c", str(config), "--once"])
    assert "Run completed with 1 error(s): Could not deactivate account" in capsys.readouterr().err
