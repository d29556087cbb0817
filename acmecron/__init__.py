#!/usr/bin/env python
# -*- coding: utf-8 -*-

# Monthly certificate renewal using ACME and DNS-01
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import os
import stat
import subprocess
import sys
import time
from datetime import datetime

from acmecron import configuration, tools
from acmecron.authority import authority
from acmecron.modes import challenge_handler
from acmecron.order import CertificateOrder
from acmecron.tools import log

# The post-issuance hook gets this many seconds to succeed
HOOK_WINDOW = 30
# Longest single sleep while waiting for the next run
MAX_SLEEP = 3600


# @brief determine when the next run is due
# @param now the current time (naive local or timezone aware)
# @return midnight on the first day of the following month, in the timezone of now
def next_run_time(now):
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


# @brief sleep until the given local time has been reached
def sleep_until(when):
    while True:
        remaining = (when - datetime.now(when.tzinfo)).total_seconds()
        if remaining <= 0:
            return
        time.sleep(min(remaining, MAX_SLEEP))


# @brief fetch a new certificate
# @param settings the configuration options
# @return the RunResult of the order
def cert_get(settings):
    log("Getting certificate for {}".format(settings['domains']))
    deadline = tools.Deadline(settings['run_timeout'])

    handler = challenge_handler(settings)
    acme = authority(settings, deadline)
    order = CertificateOrder(acme, handler, settings['challenge_type'], settings['revoke_issued_certificate'])

    identifiers = [{'type': 'dns', 'value': domain} for domain in settings['domains']]
    result = order.run(identifiers, deadline)
    cert_store(result, settings, deadline)
    return result


# @brief write key and certificate chain of a finished run to their configured locations
def cert_store(result, settings, deadline=None):
    log("Writing key to {}".format(settings['key_file']))
    tools.write_pem_file(tools.convert_key_to_pem_str(result.key), settings['key_file'], stat.S_IREAD)

    log("Writing certificate to {}".format(settings['cert_file']))
    if result.chain:
        chain = [tools.convert_der_bytes_to_cert(der) for der in result.chain]
        tools.write_pem_file(''.join(tools.convert_cert_to_pem_str(crt) for crt in chain), settings['cert_file'])
    else:
        tools.download_file(result.certificate_url, settings['cert_file'], deadline)


# @brief run the post-issuance hook until it succeeds, the attempts are used up or the window closes
# @param path executable to run without arguments
# @return True if the hook succeeded
def run_hook(path, attempts=configuration.DEFAULT_HOOK_ATTEMPTS, delay=configuration.DEFAULT_HOOK_RETRY_DELAY,
             window=HOOK_WINDOW):
    if not path:
        return False
    if not os.path.exists(path):
        log("Post-issuance hook {} does not exist".format(path), warning=True)
        return False

    log("Running post-issuance hook {}".format(path))
    give_up = time.monotonic() + window
    for attempt in range(1, attempts + 1):
        remaining = give_up - time.monotonic()
        if remaining <= 0:
            break
        try:
            returncode = subprocess.call([path], timeout=remaining)
        except (OSError, subprocess.TimeoutExpired) as e:
            log("Post-issuance hook attempt {} failed".format(attempt), e, warning=True)
        else:
            if returncode == 0:
                log("Post-issuance hook succeeded")
                return True
            log("Post-issuance hook attempt {} exited with {}".format(attempt, returncode), warning=True)
        if attempt < attempts:
            time.sleep(max(min(delay, give_up - time.monotonic()), 0))
            delay *= 2
    log("Giving up on post-issuance hook {}".format(path), warning=True)
    return False


def main(argv=None):
    try:
        runtimeconfig, config = configuration.load(argv)
    except ValueError as e:
        log("Could not load configuration", e, error=True)
        sys.exit(1)

    while True:
        try:
            result = cert_get(config)
        except Exception as e:
            log("Certificate issue/renew failed", e, error=True)
            sys.exit(1)
        if not result.ok:
            log("Run completed with {} error(s): {}".format(
                len(result.errors), "; ".join(str(e) for e in result.errors)), warning=True)

        run_hook(config['hook'], config['hook_attempts'], config['hook_retry_delay'])

        if runtimeconfig['once']:
            return
        next_run = next_run_time(datetime.now())
        log("Next run: {}".format(next_run))
        sleep_until(next_run)
