#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acmecron - acme api v2 functions (implements RFC8555)
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import copy
import json
import time

from acmecron import tools
from acmecron.authority.acme import ACMEAuthority as AbstractACMEAuthority
from acmecron.tools import log

# Maximum age for nonce values (Boulder invalidates them after some time, so we use a low value of 2 minutes here)
MAX_NONCE_AGE = 120
# Seconds between polls of pending objects if the authority does not send Retry-After
POLL_INTERVAL = 5
# Upper bound for Retry-After values honoured while polling
MAX_POLL_INTERVAL = 60


class ACMEAuthority(AbstractACMEAuthority):
    # @brief Init class with config
    # @param config Configuration data
    # @param key Account key data
    # @param deadline optional Deadline bounding every request
    def __init__(self, config, key, deadline=None):
        AbstractACMEAuthority.__init__(self, config, key, deadline)
        # Initialize config vars
        self.ca = config['directory']
        self.contact = config.get('contact')
        self.eab_key_id = config.get('eab_key_id')
        self.eab_hmac_key = config.get('eab_hmac_key')

        # Initialize runtime vars
        self.nonce = None
        self.nonce_time = 0
        code, self.directory, _ = self._request_url(self.ca)
        if code >= 400 or not isinstance(self.directory, dict):
            raise ValueError("API directory retrieval from {} failed: {} {}".format(self.ca, code, self.directory))

        self.algorithm, jwk = tools.get_key_alg_and_jwk(key)
        self.account_protected = {
            "alg": self.algorithm,
            "jwk": jwk
        }
        self.account_thumbprint = tools.bytes_to_base64url(
            tools.hash_of_str(json.dumps(jwk, sort_keys=True, separators=(',', ':'))))
        self.account_id = None  # will be updated to correct value during account registration

    # @brief fetch a given url
    def _request_url(self, url, data=None, raw_result=False):
        header = {'Content-Type': 'application/jose+json'}
        if data:
            # Always encode data to bytes
            data = data.encode('utf-8')
        try:
            resp = tools.get_url(url, data, header, timeout=tools.deadline_timeout(self.deadline))
        except IOError as e:
            body = getattr(e, "read", e.__str__)()
            if getattr(body, 'decode', None):
                body = body.decode('utf-8')
            try:
                body = json.loads(body)
            except ValueError:
                pass
            return getattr(e, "code", 999), body, getattr(e, "headers", None) or {}

        # Store next Replay-Nonce if it is in the header
        if 'Replay-Nonce' in resp.headers:
            self.nonce = resp.headers['Replay-Nonce']
            self.nonce_time = time.time()

        body = resp.read().decode('utf-8')
        if not raw_result and len(body) > 0:
            try:
                body = json.loads(body)
            except json.JSONDecodeError as e:
                raise ValueError('Could not parse non-raw result (expected JSON)', e)

        return resp.getcode(), body, resp.headers

    # @brief fetch an url with a signed request
    # @param payload request payload, None for POST-as-GET
    # @param key sign with this key (and embed its jwk) instead of the account key
    def _request_acme_url(self, url, payload=None, protected=None, raw_result=False, key=None):
        if not protected:
            protected = {}

        if payload is not None:
            payload64 = tools.bytes_to_base64url(json.dumps(payload).encode('utf8'))
        else:
            payload64 = ""  # for POST-as-GET

        signing_key = self.key if key is None else key
        algorithm, jwk = tools.get_key_alg_and_jwk(signing_key)

        for attempt in range(2):
            # Request a new nonce if there is none in cache
            if not self.nonce or time.time() > self.nonce_time + MAX_NONCE_AGE:
                self._request_url(self.directory['newNonce'])
            # Set request nonce to current cache value
            protected["nonce"] = self.nonce
            # Reset nonce cache as we are using it's current value
            self.nonce = None

            protected["url"] = url
            protected["alg"] = algorithm
            if key is not None:
                protected["jwk"] = jwk
            elif self.account_id:
                protected["kid"] = self.account_id
            protected64 = tools.bytes_to_base64url(json.dumps(protected).encode('utf8'))
            out = tools.signature_of_str(signing_key, '.'.join([protected64, payload64]))
            data = json.dumps({
                "protected": protected64,
                "payload": payload64,
                "signature": tools.bytes_to_base64url(out),
            })
            code, result, headers = self._request_url(url, data, raw_result)
            if code == 400 and isinstance(result, dict) and \
                    result.get('type') == 'urn:ietf:params:acme:error:badNonce' and attempt == 0:
                log("Authority rejected nonce, retrying with a fresh one", warning=True)
                continue
            return code, result, headers

    # @brief send a signed request to authority
    def _request_acme_endpoint(self, request, payload=None, protected=None, raw_result=False):
        return self._request_acme_url(self.directory[request], payload, protected, raw_result)

    # @brief determine the wait time before polling again
    @staticmethod
    def _retry_after(headers):
        try:
            return min(max(int(headers.get('Retry-After', POLL_INTERVAL)), 1), MAX_POLL_INTERVAL)
        except (TypeError, ValueError):
            return POLL_INTERVAL

    # @brief build the external account binding JWS (RFC8555 section 7.3.4)
    def _external_account_binding(self):
        protected64 = tools.bytes_to_base64url(json.dumps({
            "alg": "HS256",
            "kid": self.eab_key_id,
            "url": self.directory['newAccount'],
        }).encode('utf8'))
        payload64 = tools.bytes_to_base64url(json.dumps(self.account_protected['jwk']).encode('utf8'))
        signature = tools.hmac_of_str(tools.base64url_to_bytes(self.eab_hmac_key), '.'.join([protected64, payload64]))
        return {
            "protected": protected64,
            "payload": payload64,
            "signature": tools.bytes_to_base64url(signature),
        }

    # @brief register an account over ACME
    def register_account(self):
        if self.account_id:
            # We already have registered with this authority, just return
            return

        protected = copy.deepcopy(self.account_protected)
        payload = {
            "termsOfServiceAgreed": True,
            "onlyReturnExisting": False,
        }
        if self.contact:
            payload["contact"] = self.contact
        if self.eab_key_id and self.eab_hmac_key:
            log("Using external account binding with key id {}".format(self.eab_key_id))
            payload["externalAccountBinding"] = self._external_account_binding()
        code, result, headers = self._request_acme_endpoint("newAccount", payload, protected)
        if code < 400 and result.get('status') == 'valid':
            self.account_id = headers['Location']
            if 'meta' in self.directory and 'termsOfService' in self.directory['meta']:
                log("ToS at {} have been accepted.".format(self.directory['meta']['termsOfService']))
            log("Account registered and valid on {}.".format(self.ca))
        else:
            raise ValueError("Error registering account: {0} {1}".format(code, result))

    def authorize_order(self, identifiers):
        code, order, headers = self._request_acme_endpoint('newOrder', {'identifiers': identifiers})
        if code >= 400:
            raise ValueError("Error with certificate order: {0} {1}".format(code, order))
        order['_url'] = headers['Location']
        return order

    def get_authorization(self, url):
        code, authorization, _ = self._request_acme_url(url)
        if code >= 400:
            raise ValueError("Error requesting authorization: {0} {1}".format(code, authorization))
        authorization['_url'] = url
        return authorization

    def accept_challenge(self, challenge):
        code, result, _ = self._request_acme_url(challenge['url'], {})
        if code >= 400:
            raise ValueError("Error accepting challenge {0}: {1} {2}".format(challenge['url'], code, result))
        return result

    def wait_authorization(self, url):
        while True:
            code, authorization, headers = self._request_acme_url(url)
            if code >= 400:
                raise ValueError("Error polling authorization {0}: {1} {2}".format(url, code, authorization))
            status = authorization.get('status')
            if status == 'valid':
                return authorization
            if status not in ('pending', 'processing'):
                errors = [c.get('error') for c in authorization.get('challenges', []) if c.get('error')]
                raise ValueError("Authorization {0} did not pass ({1}): {2}".format(url, status, errors))
            time.sleep(self._retry_after(headers))

    def wait_order(self, url):
        while True:
            code, order, headers = self._request_acme_url(url)
            if code >= 400:
                raise ValueError("Error polling order {0}: {1} {2}".format(url, code, order))
            status = order.get('status')
            if status in ('ready', 'valid'):
                order['_url'] = url
                return order
            if status not in ('pending', 'processing'):
                raise ValueError("Order {0} failed ({1}): {2}".format(url, status, order.get('error')))
            time.sleep(self._retry_after(headers))

    def finalize_order(self, order, csr):
        order_url = order['_url']
        code, finalize, headers = self._request_acme_url(order['finalize'], {
            "csr": tools.bytes_to_base64url(tools.convert_cert_to_der_bytes(csr)),
        })
        while code < 400 and finalize.get('status') in ('pending', 'processing', 'ready'):
            time.sleep(self._retry_after(headers))
            code, finalize, headers = self._request_acme_url(order_url)
        if code >= 400 or finalize.get('status') != 'valid':
            raise ValueError("Error finalizing certificate: {0} {1}".format(code, finalize))
        log("Certificate ready!")

        certificate_url = finalize['certificate']
        code, certificate, _ = self._request_acme_url(certificate_url, raw_result=True)
        if code >= 400:
            raise ValueError("Error downloading certificate chain: {0} {1}".format(code, certificate))

        chain = [tools.convert_cert_to_der_bytes(crt) for crt in tools.convert_pem_str_to_certs(certificate)]
        return chain, certificate_url

    def revoke_authorization(self, url):
        code, result, _ = self._request_acme_url(url, {"status": "deactivated"})
        if code >= 400:
            raise ValueError("Error deactivating authorization {0}: {1} {2}".format(url, code, result))

    def deactivate_account(self):
        if not self.account_id:
            raise ValueError("No account registered on {}".format(self.ca))
        code, result, _ = self._request_acme_url(self.account_id, {"status": "deactivated"})
        if code >= 400:
            raise ValueError("Error deactivating account {0}: {1} {2}".format(self.account_id, code, result))
        log("Account {} deactivated".format(self.account_id))

    def revoke_certificate(self, key, der, reason=None):
        payload = {'certificate': tools.bytes_to_base64url(der)}
        if reason is not None:
            payload['reason'] = int(reason)
        code, result, _ = self._request_acme_url(self.directory['revokeCert'], payload, key=key)
        if code < 400:
            log("Revocation successful")
        else:
            raise ValueError("Revocation failed: {0} {1}".format(code, result))

    def dns01_challenge_record(self, token):
        return tools.bytes_to_base64url(tools.hash_of_str("{0}.{1}".format(token, self.account_thumbprint)))
