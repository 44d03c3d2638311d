"""Shared fixtures for matrixci tests."""

import copy

import pytest

from matrixci.ui.console import Console

# The matrix this tool was first written for: hosted Rust targets on three
# toolchains plus a no_std embedded target with its own build script.
TRAVIS_DOC = {
    "language": "rust",
    "services": "docker",
    "sudo": "required",
    "matrix": {
        "include": [
            {"env": "TARGET=x86_64-unknown-linux-gnu", "rust": "1.22.0"},
            {"env": "TARGET=x86_64-unknown-linux-gnu", "rust": "stable"},
            {"env": "TARGET=x86_64-unknown-linux-gnu", "rust": "nightly"},
            {
                "env": "TARGET=thumbv7em-none-eabi",
                "rust": "nightly",
                "script": "./build_nostd.sh",
                "install": [
                    "cargo install xargo || true",
                    "rustup target install armv7-unknown-linux-gnueabihf",
                    "rustup component add rust-src",
                ],
            },
        ]
    },
    "install": ["cargo install cross || true"],
    "script": ["cross test --verbose --all --release --target $TARGET"],
    "cache": "cargo",
}


@pytest.fixture
def travis_doc():
    """Return a fresh copy of the reference Travis document."""
    return copy.deepcopy(TRAVIS_DOC)


@pytest.fixture
def console():
    """Return a non-debug console."""
    return Console(debug=False)
