#!/usr/bin/env python
# -*- coding: utf-8 -*-
# dns.abstract - propagation checks shared by dns based challenge handlers
# Copyright (c) Rudolf Mayerhofer, 2018-2019
# available under the ISC license, see LICENSE

import functools
import ipaddress
import socket
import time
from datetime import datetime, timedelta

import dns.exception
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdatatype
import dns.resolver

from acmecron.modes.abstract import AbstractChallengeHandler
from acmecron.tools import log

QUERY_TIMEOUT = 10  # seconds are the maximum for any query (otherwise the DNS server will be considered dead)
MAX_VERIFY_INTERVAL = 30
# Lookup results are kept for the lifetime of the process, bounded to this many entries per lookup
LOOKUP_CACHE_SIZE = 64


class DNSChallengeHandler(AbstractChallengeHandler):
    @staticmethod
    @functools.lru_cache(maxsize=LOOKUP_CACHE_SIZE)
    def _lookup_ip(domain_or_ip):
        try:
            return str(ipaddress.ip_address(domain_or_ip.strip()))
        except ValueError:
            pass
        # No valid ip found so far, try to resolve using system resolver
        result = socket.getaddrinfo(domain_or_ip, 53)
        if len(result) > 0:
            return result[0][4][0]
        else:
            raise ValueError("Could not lookup dns ip for {}".format(domain_or_ip))

    # @brief addresses of all name servers of the zone holding domain (failed lookups are not cached)
    @staticmethod
    @functools.lru_cache(maxsize=LOOKUP_CACHE_SIZE)
    def _lookup_ns_ip(domain, nameserver=None):
        zone, zonemaster = DNSChallengeHandler._lookup_zone(domain, nameserver)
        if not nameserver:
            nameserver = DNSChallengeHandler._lookup_ip(zonemaster)

        request = dns.message.make_query(zone, dns.rdatatype.NS)
        response = dns.query.udp(request, nameserver, timeout=QUERY_TIMEOUT)
        if response.rcode() != dns.rcode.NOERROR:
            raise ValueError("NS lookup for {} failed: {}".format(zone, dns.rcode.to_text(response.rcode())))
        retval = set()
        for answer in response.answer:
            for item in answer:
                if item.rdtype == dns.rdatatype.NS:
                    retval.add(DNSChallengeHandler._lookup_ip(item.to_text()))
        return frozenset(retval)

    @staticmethod
    @functools.lru_cache(maxsize=LOOKUP_CACHE_SIZE)
    def _lookup_zone(domain, nameserver=None):
        if nameserver:
            nameservers = [nameserver]
        else:
            nameservers = dns.resolver.get_default_resolver().nameservers

        domain = dns.name.from_text(domain)
        while domain.parent() != dns.name.root:
            request = dns.message.make_query(domain, dns.rdatatype.SOA)
            for nameserver in nameservers:
                try:
                    response = dns.query.udp(request, nameserver, timeout=QUERY_TIMEOUT)
                    if response.rcode() == dns.rcode.NOERROR:
                        for answer in response.answer:
                            for item in answer:
                                if item.rdtype == dns.rdatatype.SOA:
                                    return domain.to_text(), item.mname.to_text().split(' ')[0]
                    else:
                        break
                except dns.exception.Timeout:
                    # Go to next nameserver on timeout
                    continue
                except dns.exception.DNSException:
                    # Break loop on any other error
                    break
            domain = domain.parent()
        raise ValueError('No zone SOA for "{0}"'.format(domain))

    @staticmethod
    def _check_txt_record_value(domain, txtvalue, nameserverip):
        try:
            request = dns.message.make_query(domain, dns.rdatatype.TXT)
            response = dns.query.udp(request, nameserverip, timeout=QUERY_TIMEOUT)
            for rrset in response.answer:
                for answer in rrset:
                    if answer.to_text().strip('"') == txtvalue:
                        return True
        except dns.exception.DNSException:
            # Ignore DNS errors and return failure
            pass
        return False

    @staticmethod
    def get_challenge_type():
        return "dns-01"

    # @brief name of the TXT record proving control of the given domain
    @staticmethod
    def challenge_record_name(domain):
        return "_acme-challenge.{0}".format(domain)

    def __init__(self, config):
        AbstractChallengeHandler.__init__(self, config)
        self.dns_ttl = int(config.get("dns_ttl", 60))
        self.dns_verify_waittime = int(config.get("dns_verify_waittime", 2 * self.dns_ttl))
        self.dns_verify_interval = int(config.get("dns_verify_interval", 5))
        self.dns_verify_all_ns = str(config.get("dns_verify_all_ns", "true")).lower() == "true"
        self.dns_verify_server = config.get("dns_verify_server")
        self.dns_settle_time = int(config.get("dns_settle_time", 31))

        self._valid_times = {}

    # @brief block until a freshly published TXT record is visible (or the wait time has passed)
    def wait_for_record(self, domain, txtvalue):
        self._valid_times[domain] = datetime.now() + timedelta(seconds=self.dns_verify_waittime)
        interval = self.dns_verify_interval
        while not self.verify_dns_record(domain, txtvalue):
            remaining = (self._valid_times[domain] - datetime.now()).total_seconds()
            delay = max(min(interval, remaining), 0)
            log("Waiting {:.0f}s until TXT record '{}' is ready".format(delay, domain))
            time.sleep(delay)
            interval = min(interval * 2, MAX_VERIFY_INTERVAL)

    # @brief block for the settle time after records were removed
    def wait_for_removal(self):
        if self.dns_settle_time > 0:
            log("Waiting {}s for record removal to settle".format(self.dns_settle_time))
            time.sleep(self.dns_settle_time)

    def verify_dns_record(self, domain, txtvalue):
        if self.dns_verify_all_ns:
            try:
                nameserverip = None
                if self.dns_verify_server:
                    # Use the specific dns server to determine NS for domain, will otherwise default to SOA master
                    nameserverip = self._lookup_ip(self.dns_verify_server)
                ns_ip = self._lookup_ns_ip(domain, nameserverip)
                if len(ns_ip) > 0 and all(self._check_txt_record_value(domain, txtvalue, ip) for ip in ns_ip):
                    # All NS servers have the necessary TXT record. Succeed immediately!
                    log("All NS ({}) for '{}' have the correct TXT record".format(','.join(ns_ip), domain))
                    return True
            except (ValueError, OSError, dns.exception.DNSException):
                # Fall back to next verification
                pass

        if self.dns_verify_server and not self.dns_verify_all_ns:
            try:
                # Verify using specific dns server
                nameserverip = self._lookup_ip(self.dns_verify_server)
                if self._check_txt_record_value(domain, txtvalue, nameserverip):
                    # Verify server confirms the necessary TXT record. Succeed immediately!
                    log("DNS server '{}' found correct TXT record for '{}'".format(self.dns_verify_server, domain))
                    return True
            except (ValueError, OSError, dns.exception.DNSException):
                # Fall back to next verification
                pass

        if domain not in self._valid_times:
            # No valid wait time for domain. Verification fails!
            return False
        # Verification fails or succeeds based on valid wait time set by wait_for_record
        return datetime.now() >= self._valid_times[domain]
