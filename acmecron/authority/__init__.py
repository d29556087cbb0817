#!/usr/bin/env python
# -*- coding: utf-8 -*-

# authority - authority api package
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

from acmecron import tools
from acmecron.authority.v2 import ACMEAuthority
from acmecron.tools import log


# @brief create an authority client bound to a fresh, ephemeral account key
# @param settings the authority configuration options
# @param deadline the run deadline every request of the client is bounded by
def authority(settings, deadline=None):
    log("Creating ephemeral account key for {}".format(settings['directory']))
    acc_key = tools.new_account_key()
    return ACMEAuthority(settings, acc_key, deadline)
