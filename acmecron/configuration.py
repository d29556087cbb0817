#!/usr/bin/env python
# -*- coding: utf-8 -*-

# config - acmecron config parser
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import argparse
import io
import json
import os

import yaml

from acmecron.tools import idna_convert

# Configuration defaults to use if not specified otherwise
DEFAULT_CONF_FILENAME = "config.yml"
DEFAULT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
DEFAULT_CHALLENGE_TYPE = "dns-01"
DEFAULT_CERT_FILE = "cert.pem"
DEFAULT_KEY_FILE = "key.pem"
DEFAULT_RUN_TIMEOUT = 600  # seconds
DEFAULT_HOOK_ATTEMPTS = 5
DEFAULT_HOOK_RETRY_DELAY = 2  # seconds

# Alternative names accepted for configuration keys
ALIASES = {
    'contact_email': ['reginfo'],
    'eab_key_id': ['EAB_KEY_ID'],
    'eab_hmac_key': ['EAB_HMAC_KEY'],
    'cloudflare_api_token': ['CLOUDFLARE_API_TOKEN'],
    'cloudflare_zone_id': ['CLOUDFLARE_ZONE_ID'],
    'hook': ['AFTER_SETUP_SCRIPT'],
    'cert_file': ['SAVING_CER_PATH'],
    'key_file': ['SAVING_KEY_PATH'],
}

# Options handed to the challenge handler unchanged if present
HANDLER_OPTIONS = ['mode', 'dns_ttl', 'dns_verify_waittime', 'dns_verify_interval', 'dns_verify_all_ns',
                   'dns_verify_server', 'dns_settle_time']


# @brief update config[name] with value from fileconfig (by name or alias) or default
def update_config_value(config, name, fileconfig, default):
    for key in [name] + ALIASES.get(name, []):
        if key in fileconfig and fileconfig[key] not in (None, ''):
            config[name] = fileconfig[key]
            return
    config[name] = default


# @brief normalize the contact email(s) to mailto: uris
def parse_contact(contact_email):
    if not contact_email:
        return None
    if not isinstance(contact_email, list):
        contact_email = [contact_email]
    return [x if x.startswith("mailto:") else "mailto:{}".format(x) for x in contact_email]


# @brief build the configuration from the parsed file contents
def parse_config(fileconfig):
    if not isinstance(fileconfig, dict):
        raise ValueError("Configuration must be a mapping, got {}".format(type(fileconfig).__name__))
    config = dict()

    # Domains (list or space separated string), converted from unicode to IDNA
    update_config_value(config, 'domains', fileconfig, [])
    domains = config['domains']
    if not isinstance(domains, list):
        domains = str(domains).split(' ')
    domains = [x.strip() for x in domains if x and x.strip()]
    if len(domains) == 0:
        raise ValueError("At least one domain identifier is required")
    config['domains'] = idna_convert(domains)

    # Authority related config options
    update_config_value(config, 'directory', fileconfig, DEFAULT_DIRECTORY)
    update_config_value(config, 'contact_email', fileconfig, None)
    config['contact'] = parse_contact(config['contact_email'])
    update_config_value(config, 'eab_key_id', fileconfig, None)
    update_config_value(config, 'eab_hmac_key', fileconfig, None)
    update_config_value(config, 'challenge_type', fileconfig, DEFAULT_CHALLENGE_TYPE)
    update_config_value(config, 'revoke_issued_certificate', fileconfig, "true")
    config['revoke_issued_certificate'] = str(config['revoke_issued_certificate']).lower() == "true"

    # DNS provider
    update_config_value(config, 'cloudflare_api_token', fileconfig, None)
    update_config_value(config, 'cloudflare_zone_id', fileconfig, None)
    if not config['cloudflare_api_token'] or not config['cloudflare_zone_id']:
        raise ValueError("Both cloudflare_api_token and cloudflare_zone_id are required")
    for name in HANDLER_OPTIONS:
        if name in fileconfig:
            config[name] = fileconfig[name]

    # Output files
    update_config_value(config, 'cert_file', fileconfig, DEFAULT_CERT_FILE)
    update_config_value(config, 'key_file', fileconfig, DEFAULT_KEY_FILE)

    # Run time limit
    update_config_value(config, 'run_timeout', fileconfig, DEFAULT_RUN_TIMEOUT)
    config['run_timeout'] = int(config['run_timeout'])

    # Post-issuance hook
    update_config_value(config, 'hook', fileconfig, None)
    update_config_value(config, 'hook_attempts', fileconfig, DEFAULT_HOOK_ATTEMPTS)
    config['hook_attempts'] = int(config['hook_attempts'])
    update_config_value(config, 'hook_retry_delay', fileconfig, DEFAULT_HOOK_RETRY_DELAY)
    config['hook_retry_delay'] = float(config['hook_retry_delay'])

    return config


# @brief read a configuration file (JSON, or YAML if it is not valid JSON)
def read_config_file(path):
    if not os.path.isfile(path):
        raise ValueError("Configuration file {} not found".format(path))
    with io.open(path) as config_fd:
        try:
            return json.load(config_fd)
        except ValueError:
            config_fd.seek(0)
            try:
                return yaml.safe_load(config_fd)
            except yaml.YAMLError as e:
                raise ValueError("Could not parse configuration file {}: {}".format(path, e)) from e


# @brief load the configuration from the command line and configuration file
# @return runtime options, configuration
def load(argv=None):
    runtimeconfig = dict()
    parser = argparse.ArgumentParser(description="acmecron - monthly certificate renewal using ACME and DNS-01")
    parser.add_argument("-c", "--config-file", default=DEFAULT_CONF_FILENAME,
                        help="configuration file (default='{}')".format(DEFAULT_CONF_FILENAME))
    parser.add_argument("--once", action="store_true",
                        help="issue a certificate once and exit instead of renewing monthly")
    args = parser.parse_args(argv)

    runtimeconfig['config_file'] = args.config_file
    runtimeconfig['once'] = args.once

    return runtimeconfig, parse_config(read_config_file(args.config_file))
