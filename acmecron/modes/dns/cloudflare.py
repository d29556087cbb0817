#!/usr/bin/env python
# -*- coding: utf-8 -*-

# dns.cloudflare - cloudflare api based challenge handler
# Copyright (c) Rudolf Mayerhofer, 2019
# available under the ISC license, see LICENSE

import CloudFlare

from acmecron.modes.dns.abstract import DNSChallengeHandler
from acmecron.tools import log, ChallengeRecordError

# Comment attached to every record we create, used to find them again for cleanup
RECORD_TAG = "acme-challenge"
RECORDS_PER_PAGE = 100


class ChallengeHandler(DNSChallengeHandler):
    # @param client an already constructed CloudFlare client (created from the api token if not given)
    def __init__(self, config, client=None):
        DNSChallengeHandler.__init__(self, config)
        self.zone_id = config["cloudflare_zone_id"]
        if client is None:
            log("Setting up Cloudflare API client for zone {}".format(self.zone_id))
            client = CloudFlare.CloudFlare(token=config["cloudflare_api_token"])
        self.cf = client

    @staticmethod
    def _check_deadline(deadline):
        if deadline is not None:
            deadline.remaining()

    def list_challenge_records(self, deadline=None):
        self._check_deadline(deadline)
        params = {'comment': RECORD_TAG, 'per_page': RECORDS_PER_PAGE}
        try:
            records = self.cf.zones.dns_records.get(self.zone_id, params=params)
        except CloudFlare.exceptions.CloudFlareAPIError as e:
            # An unknown state is treated as nothing to clean up
            log("Could not list challenge records in zone {}: {}".format(self.zone_id, e), warning=True)
            return set()
        return set(record['id'] for record in records)

    def upsert_challenge_record(self, name, token, deadline=None):
        errors = self.delete_challenge_records(deadline)

        data = {'name': name,
                'type': 'TXT',
                'content': token,
                'ttl': self.dns_ttl,
                'comment': RECORD_TAG}
        self._check_deadline(deadline)
        try:
            record = self.cf.zones.dns_records.post(self.zone_id, data=data)
        except CloudFlare.exceptions.CloudFlareAPIError as e:
            hint = ''
            if int(e) == 1009 or int(e) == 10000:
                hint = ' (does your API token have "Zone:DNS:Edit" permissions?)'
            raise ChallengeRecordError("Could not add TXT record '{}' to zone {}: {}{}".format(
                name, self.zone_id, e, hint)) from e
        log('Added \'{} {} IN TXT "{}"\' to zone {} as record {}'.format(
            name, self.dns_ttl, token, self.zone_id, record.get('id') if record else None))

        self.wait_for_record(name, token)
        return errors

    def delete_challenge_records(self, deadline=None):
        errors = list()
        record_ids = self.list_challenge_records(deadline)
        if not record_ids:
            return errors

        for record_id in sorted(record_ids):
            self._check_deadline(deadline)
            try:
                self.cf.zones.dns_records.delete(self.zone_id, record_id)
                log("Deleted challenge record {} from zone {}".format(record_id, self.zone_id))
            except CloudFlare.exceptions.CloudFlareAPIError as e:
                log("Could not delete challenge record {} from zone {}: {}".format(record_id, self.zone_id, e),
                    warning=True)
                errors.append(e)

        self.wait_for_removal()
        return errors
