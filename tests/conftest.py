#!/usr/bin/env python3
"""Shared fixtures for the gateway test suite"""

import asyncio

import pytest

from .fakes import make_user


@pytest.fixture
def shutdown_event():
    return asyncio.Event()


@pytest.fixture
def user():
    return make_user()
