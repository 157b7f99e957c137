#!/usr/bin/python3
# Setup file for histrewrite
# Copyright (C) 2026 The histrewrite authors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

setup()
