#!/usr/bin/env python
# -*- coding: utf-8 -*-

# order - drives a single acme order from authorization to cleanup
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

from acmecron import tools
from acmecron.authority.acme import REVOKE_REASON_CESSATION_OF_OPERATION
from acmecron.tools import log, DeadlineExceededError, InvalidCertificateError


# @brief outcome of one issuance run
class RunResult:
    def __init__(self, key, certificate_url, chain, errors):
        # private key of the issued certificate
        self.key = key
        # url of the certificate resource on the authority
        self.certificate_url = certificate_url
        # DER encoded certificates as returned by the authority, leaf first
        self.chain = chain
        # non-fatal errors collected during the run
        self.errors = errors

    @property
    def ok(self):
        return len(self.errors) == 0


# @brief check a certificate chain issued for the given identifiers
# @raises InvalidCertificateError if the chain is empty, unparsable or not valid for every identifier
def check_cert(der_chain, identifiers):
    if len(der_chain) == 0:
        raise InvalidCertificateError("Certificate chain is empty")
    for i, der in enumerate(der_chain):
        try:
            crt = tools.convert_der_bytes_to_cert(der)
        except ValueError as e:
            raise InvalidCertificateError("{}: could not parse certificate: {}".format(i, e)) from e
        log("{}: serial: {:#x}".format(i, crt.serial_number))
        log("{}: subject: {}".format(i, crt.subject.rfc4514_string()))
        log("{}: issuer: {}".format(i, crt.issuer.rfc4514_string()))
        log("{}: expires in {:.1f} day(s)".format(i, tools.get_cert_days_left(crt)))
        if i > 0:
            # not a leaf cert
            continue
        log("{}: leaf:{}{}".format(i, '\n', tools.convert_cert_to_pem_str(crt)))
        for identifier in identifiers:
            tools.verify_cert_hostname(crt, identifier['value'])


class CertificateOrder:
    # @param acme the authority client (account key already set, not yet registered)
    # @param challenge_handler handler publishing the challenge records
    # @param challenge_type the only challenge type we fulfill
    # @param revoke_certificate revoke the issued certificate during teardown
    def __init__(self, acme, challenge_handler, challenge_type="dns-01", revoke_certificate=True):
        self.acme = acme
        self.challenge_handler = challenge_handler
        self.challenge_type = challenge_type
        self.revoke_certificate = revoke_certificate

    # @brief run the order for the given identifiers
    # @param identifiers list of {'type': 'dns', 'value': domain} dicts
    # @param deadline the run deadline passed on to the challenge handler
    # @return RunResult, any fatal error is raised
    def run(self, identifiers, deadline=None):
        if len(identifiers) == 0:
            raise ValueError("At least one domain identifier is required")

        errors = list()
        chain = None
        try:
            self.acme.register_account()
            key, certificate_url, chain, authorization_urls = self._order(identifiers, deadline, errors)
            errors.extend(self._validate(chain, identifiers))
            errors.extend(self._teardown(authorization_urls, key, chain))
        finally:
            log("Cleaning up challenge records")
            try:
                errors.extend(self.challenge_handler.delete_challenge_records(deadline))
            except DeadlineExceededError as e:
                if chain is None:
                    raise
                # once a certificate exists cleanup failures are soft
                log("Could not clean up challenge records", e, warning=True)
                errors.append(e)

        if errors:
            log("Run finished with {} error(s)".format(len(errors)), warning=True)
        return RunResult(key, certificate_url, chain, errors)

    def _order(self, identifiers, deadline, errors):
        log("Ordering certificate for {}".format(', '.join(x['value'] for x in identifiers)))
        order = self.acme.authorize_order(identifiers)

        authorization_urls = list()
        for url in order['authorizations']:
            authorization = self.acme.get_authorization(url)
            if authorization.get('status') != 'pending':
                log("Authorization for {} is {}; skipping".format(
                    authorization['identifier']['value'], authorization.get('status')))
                continue
            errors.extend(self._fulfill(authorization, deadline))
            authorization_urls.append(authorization['_url'])
            log("Authorized {}".format(authorization['identifier']['value']))

        log("All challenges are done")
        order = self.acme.wait_order(order['_url'])

        names = list()
        for identifier in identifiers:
            if identifier['type'] != 'dns':
                raise ValueError("Unknown identifier type {}".format(identifier['type']))
            names.append(identifier['value'])
        key = tools.new_ssl_key()
        csr = tools.new_cert_request(names, key)

        log("Finalizing certificate")
        chain, certificate_url = self.acme.finalize_order(order, csr)
        log("Certificate URL: {}".format(certificate_url))
        return key, certificate_url, chain, authorization_urls

    # @brief fulfill a pending authorization
    # @return list of non-fatal errors
    def _fulfill(self, authorization, deadline):
        challenge = None
        for i, c in enumerate(authorization.get('challenges', [])):
            log("Challenge {}: {} {}".format(i, c.get('type'), c.get('url')))
            if c.get('type') == self.challenge_type:
                challenge = c
        if challenge is None:
            raise ValueError("Challenge type {} wasn't offered for authorization {}".format(
                self.challenge_type, authorization['_url']))
        log("Picked {} for authorization {}".format(challenge['url'], authorization['_url']))

        if challenge['type'] != "dns-01":
            raise ValueError("Unknown challenge type {}".format(challenge['type']))
        errors = list()
        try:
            errors.extend(self._run_dns01(authorization, challenge, deadline))
        finally:
            # retract the record before the next identifier gets its own
            errors.extend(self.challenge_handler.delete_challenge_records(deadline))
        return errors

    def _run_dns01(self, authorization, challenge, deadline):
        token = self.acme.dns01_challenge_record(challenge['token'])
        name = self.challenge_handler.challenge_record_name(authorization['identifier']['value'])
        errors = self.challenge_handler.upsert_challenge_record(name, token, deadline)

        log("Starting verification of {}".format(authorization['identifier']['value']))
        self.acme.accept_challenge(challenge)
        self.acme.wait_authorization(authorization['_url'])
        return errors

    # @brief check the issued chain, failures are not fatal as the certificate exists anyway
    def _validate(self, chain, identifiers):
        try:
            check_cert(chain, identifiers)
        except InvalidCertificateError as e:
            log("Invalid certificate: {}".format(e), error=True)
            return [e]
        return []

    # @brief give back everything this run no longer needs (best-effort)
    def _teardown(self, authorization_urls, key, chain):
        errors = list()
        for url in authorization_urls:
            try:
                self.acme.revoke_authorization(url)
            except (ValueError, IOError, DeadlineExceededError) as e:
                log("Could not deactivate authorization {}".format(url), e, warning=True)
                errors.append(e)

        try:
            self.acme.deactivate_account()
        except (ValueError, IOError, DeadlineExceededError) as e:
            log("Could not deactivate account", e, warning=True)
            errors.append(e)

        if self.revoke_certificate:
            if len(chain) == 0:
                log("No certificate to revoke", warning=True)
            else:
                try:
                    self.acme.revoke_certificate(key, chain[0], REVOKE_REASON_CESSATION_OF_OPERATION)
                except (ValueError, IOError, DeadlineExceededError) as e:
                    log("Could not revoke certificate", e, warning=True)
                    errors.append(e)
        return errors
