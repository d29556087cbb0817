#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acmecron - various support functions
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import base64
import datetime
import io
import os
import re
import stat
import sys
import time
import traceback
from urllib.request import urlopen, Request

from cryptography import x509
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.utils import int_to_bytes
from cryptography.x509.oid import NameOID, ExtensionOID

PEM_CERTIFICATE_REGEX = r'-----BEGIN CERTIFICATE-----[^\-]+-----END CERTIFICATE-----'
# Length of a P-256 coordinate or signature half in bytes
P256_OCTETS = 32


class InvalidCertificateError(Exception):
    pass


class ChallengeRecordError(Exception):
    pass


class DeadlineExceededError(Exception):
    pass


# @brief time budget shared by every network call of a single run
class Deadline:
    def __init__(self, seconds):
        self.seconds = seconds
        self.expires = time.monotonic() + seconds

    # @brief seconds left in the budget, raises DeadlineExceededError once it is used up
    def remaining(self):
        remaining = self.expires - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceededError("Run deadline of {} seconds exceeded".format(self.seconds))
        return remaining


# @brief remaining seconds of an optional deadline (None if there is no deadline)
def deadline_timeout(deadline):
    return deadline.remaining() if deadline is not None else None


# @brief a simple, portable indent function
def indent(text, spaces=0):
    ind = ' ' * spaces
    return os.linesep.join(ind + line for line in text.splitlines())


# @brief wrapper for log output
def log(msg, exc=None, error=False, warning=False):
    if error:
        prefix = "Error: "
    elif warning:
        prefix = "Warning: "
    else:
        prefix = ""

    output = prefix + msg
    if exc:
        formatted_exc = traceback.format_exception(type(exc), exc, exc.__traceback__)
        output += os.linesep + indent(''.join(formatted_exc), len(prefix))

    if error or warning:
        sys.stderr.write(output + os.linesep)
        sys.stderr.flush()  # force flush buffers after message was written for immediate display
    else:
        sys.stdout.write(output + os.linesep)
        sys.stdout.flush()  # force flush buffers after message was written for immediate display


# @brief wrapper for downloading an url
# @param timeout socket timeout in seconds (None blocks without limit)
def get_url(url, data=None, headers=None, timeout=None):
    request = Request(url, data=data, headers={} if headers is None else headers)
    if timeout is None:
        return urlopen(request)
    return urlopen(request, timeout=timeout)


# @brief download an url into a file
# @param deadline optional run deadline bounding the request
def download_file(url, path, deadline=None):
    resp = get_url(url, timeout=deadline_timeout(deadline))
    code = resp.getcode()
    if code != 200:
        raise IOError("Downloading {} failed with status {}".format(url, code))
    with io.open(path, 'wb') as out:
        out.write(resp.read())


# @brief create a certificate signing request
# @param names list of domain names the certificate should be valid for, the first one becomes the CN
# @param key the private key to sign the request with
# @return the CSR in cryptography format
def new_cert_request(names, key):
    primary_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
    all_names = x509.SubjectAlternativeName([x509.DNSName(name) for name in names])
    req = x509.CertificateSigningRequestBuilder()
    req = req.subject_name(primary_name)
    req = req.add_extension(all_names, critical=False)
    return req.sign(key, hashes.SHA256())


# @brief generate a new account key (never written to disk)
def new_account_key():
    return new_ssl_key()


# @brief generate a new P-256 key
def new_ssl_key():
    return ec.generate_private_key(curve=ec.SECP256R1())


# @brief serialize a private key as unencrypted PKCS#8 PEM
def convert_key_to_pem_str(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('utf8')


# @brief write PEM data to a file
# @param data PEM formatted str
# @param perms optional file permissions to set once written
def write_pem_file(data, path, perms=None):
    if hasattr(os, 'chmod') and os.path.exists(path):
        try:
            os.chmod(path, os.stat(path).st_mode | stat.S_IWRITE)
        except OSError:
            log('Could not make file ({0}) writable'.format(path), warning=True)
    with io.open(path, "w") as f:
        f.write(data)
    if perms:
        if hasattr(os, 'chmod'):
            try:
                os.chmod(path, perms)
            except OSError:
                log('Could not set file permissions ({0}) on {1}!'.format(perms, path), warning=True)
        else:
            log('PEM-File permission handling unavailable on this platform', warning=True)


# @brief determine all names a certificate is valid for
# @return the SAN dns names, or the subject CN if the certificate carries no SAN extension
def get_cert_domains(cert):
    try:
        san_cert = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return [x.value for x in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    return san_cert.value.get_values_for_type(x509.DNSName)


# @brief determine certificate end of validity
def get_cert_valid_until(cert):
    return cert.not_valid_after_utc


# @brief match a hostname against a certificate name (wildcards cover exactly one leftmost label)
def hostname_matches(pattern, hostname):
    pattern = pattern.lower().rstrip('.')
    hostname = hostname.lower().rstrip('.')
    if pattern == hostname:
        return True
    if pattern.startswith('*.'):
        label, _, rest = hostname.partition('.')
        return len(label) > 0 and rest == pattern[2:]
    return False


# @brief check whether a certificate is valid for the given hostname
# @raises InvalidCertificateError if no name of the certificate matches
def verify_cert_hostname(cert, hostname):
    names = get_cert_domains(cert)
    if not any(hostname_matches(name, hostname) for name in names):
        raise InvalidCertificateError(
            "Certificate is valid for {}, not {}".format(', '.join(names) or 'no names', hostname))


# @brief days until the certificate expires
def get_cert_days_left(cert):
    now = datetime.datetime.now(datetime.timezone.utc)
    return (get_cert_valid_until(cert) - now).total_seconds() / 86400


# @brief convert certificate to PEM format
def convert_cert_to_pem_str(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode('utf8')


# @brief load a PEM certificate from str
def convert_pem_str_to_cert(certdata):
    return x509.load_pem_x509_certificate(certdata.encode('utf8'))


# @brief load every certificate of a PEM chain
def convert_pem_str_to_certs(chaindata):
    return [convert_pem_str_to_cert(pem) for pem in re.findall(PEM_CERTIFICATE_REGEX, chaindata, re.DOTALL)]


# @brief serialize cert/csr to DER bytes
def convert_cert_to_der_bytes(data):
    return data.public_bytes(serialization.Encoding.DER)


# @brief load a DER certificate from bytes
def convert_der_bytes_to_cert(data):
    return x509.load_der_x509_certificate(data)


# @brief determine key signing algorithm and jwk data
# @return key algorithm, key numbers as a dict
def get_key_alg_and_jwk(key):
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise ValueError("Unsupported key: {}".format(key))
    # See https://tools.ietf.org/html/rfc7518#section-6.2
    numbers = key.public_key().public_numbers()
    return 'ES256', {"kty": "EC", "crv": "P-256",
                     "x": bytes_to_base64url(int_to_bytes(numbers.x, P256_OCTETS)),
                     "y": bytes_to_base64url(int_to_bytes(numbers.y, P256_OCTETS))}


# @brief sign string with key
def signature_of_str(key, string):
    der_sig = key.sign(string.encode('utf8'), ec.ECDSA(hashes.SHA256()))
    # convert DER signature to RAW format (https://tools.ietf.org/html/rfc7518#section-3.4)
    r, s = decode_dss_signature(der_sig)
    return int_to_bytes(r, P256_OCTETS) + int_to_bytes(s, P256_OCTETS)


# @brief HMAC-SHA256 of a string (used for external account binding)
def hmac_of_str(key, string):
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(string.encode('utf8'))
    return mac.finalize()


# @brief hash a string
def hash_of_str(string):
    digest = hashes.Hash(hashes.SHA256())
    digest.update(string.encode('utf8'))
    return digest.finalize()


# @brief helper function to base64 encode for JSON objects
# @param b the byte-string to encode
# @return the encoded string
def bytes_to_base64url(b):
    return base64.urlsafe_b64encode(b).decode('utf8').replace("=", "")


# @brief decode unpadded base64url data
def base64url_to_bytes(s):
    return base64.urlsafe_b64decode(s + '=' * (-len(s) % 4))


# @brief convert domain list to idna representation (if applicable)
# @return list of domain names, unicode names replaced by their idna form
def idna_convert(domainlist):
    if any(ord(c) >= 128 for c in ''.join(domainlist)):
        try:
            idna_domains = list()
            for domain in domainlist:
                if any(ord(c) >= 128 for c in domain):
                    # Translate IDNA domain name from a unicode domain (handle wildcards separately)
                    if domain.startswith('*.'):
                        idna_domain = "*.{}".format(domain[2:].encode('idna').decode('ascii'))
                    else:
                        idna_domain = domain.encode('idna').decode('ascii')
                    log("Using IDNA name {} for {}".format(idna_domain, domain))
                    domain = idna_domain
                idna_domains.append(domain)
            return idna_domains
        except UnicodeError as e:
            log("Unicode domain(s) found but IDNA names could not be translated due to error: {}".format(e), error=True)
    return list(domainlist)
