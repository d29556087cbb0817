#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acmecron - generic acme api functions
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

# Revocation reason code, see https://tools.ietf.org/html/rfc5280#section-5.3.1
REVOKE_REASON_CESSATION_OF_OPERATION = 5


class ACMEAuthority:
    # @brief Init class with config
    # @param config Configuration data
    # @param key Account key data
    # @param deadline optional Deadline bounding every request made by this instance
    def __init__(self, config, key, deadline=None):
        self.key = key
        self.config = config
        self.deadline = deadline

    # @brief register an account over ACME
    def register_account(self):
        raise NotImplementedError

    # @brief open a new order
    # @param identifiers list of {'type': 'dns', 'value': domain} dicts
    # @return the order object, its url stored as '_url'
    def authorize_order(self, identifiers):
        raise NotImplementedError

    # @brief fetch an authorization object, its url stored as '_url'
    def get_authorization(self, url):
        raise NotImplementedError

    # @brief tell the authority that a challenge is ready to be validated
    def accept_challenge(self, challenge):
        raise NotImplementedError

    # @brief wait until an authorization left the pending state
    # @return the authorization object, raises if it did not become valid
    def wait_authorization(self, url):
        raise NotImplementedError

    # @brief wait until an order is ready for finalization (or already valid)
    def wait_order(self, url):
        raise NotImplementedError

    # @brief submit the CSR for an order and fetch the issued certificate
    # @param order the order object as returned by authorize_order
    # @param csr the certificate signing request in cryptography format
    # @return list of DER encoded certificates (leaf first), certificate url
    def finalize_order(self, order, csr):
        raise NotImplementedError

    # @brief deactivate an authorization
    def revoke_authorization(self, url):
        raise NotImplementedError

    # @brief deactivate the account
    def deactivate_account(self):
        raise NotImplementedError

    # @brief revoke a certificate by signing the request with the certificate key
    # @param key the certificate private key
    # @param der DER encoded certificate
    # @param reason (int) revocation reason
    def revoke_certificate(self, key, der, reason=None):
        raise NotImplementedError

    # @brief determine the TXT record value for a dns-01 challenge token
    def dns01_challenge_record(self, token):
        raise NotImplementedError
