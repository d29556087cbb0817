#!/usr/bin/env python
# -*- coding: utf-8 -*-

# modes - challenge handler modes package
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import importlib

DEFAULT_MODE = "dns.cloudflare"


# @brief create the challenge handler for the given settings
# @param settings the configuration options
def challenge_handler(settings):
    mode = settings.get("mode", DEFAULT_MODE)
    handler_module = importlib.import_module("acmecron.modes.{0}".format(mode))
    handler_class = getattr(handler_module, "ChallengeHandler")
    return handler_class(settings)
