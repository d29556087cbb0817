#!/usr/bin/env python
# -*- coding: utf-8 -*-

# abstract - abstract base classes for challenge handlers
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE


class AbstractChallengeHandler:
    def __init__(self, config):
        self.config = config

    @staticmethod
    def get_challenge_type():
        raise NotImplementedError

    # @brief ids of all challenge records currently published by us
    def list_challenge_records(self, deadline=None):
        raise NotImplementedError

    # @brief replace any published challenge record with a new one
    # @return list of non-fatal errors encountered while removing old records
    def upsert_challenge_record(self, name, token, deadline=None):
        raise NotImplementedError

    # @brief remove all published challenge records
    # @return list of non-fatal errors
    def delete_challenge_records(self, deadline=None):
        raise NotImplementedError
