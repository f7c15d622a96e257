import os
import stat
import time

import pytest

from ovpn_pki.config import Config
from ovpn_pki.local_ca import LocalToolchain
from ovpn_pki.state import PkiStateMachine
from ovpn_pki.store import ArtifactStore

SERVER_URL = "udp://vpn.example.com"
INSTANCE = "ovpn-data"


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / INSTANCE)


@pytest.fixture
def toolchain(store):
    # EC keys keep the suite fast; RSA goes through the same code path.
    return LocalToolchain(store, key_algorithm="ec", curve="secp256r1")


@pytest.fixture
def state(store, toolchain):
    return PkiStateMachine(store, toolchain, INSTANCE)


@pytest.fixture
def ready(state):
    state.init(SERVER_URL)
    return state


@pytest.fixture
def config(tmp_path):
    return Config(
        data_volume=INSTANCE,
        data_dir=tmp_path / "openvpn",
        key_algorithm="ec",
        curve="secp256r1",
        docker_binary=str(tmp_path / "no-such-docker"),
    )
