# SPDX-License-Identifier: BSD-2-Clause
import os

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from stm32image import header_size, stm32image_create_header_file

IMAGE_SIZE = 4096
PASSWORD = 'qwerty'


def write_key(path, key, password=None):
    if password is None:
        enc = serialization.NoEncryption()
    else:
        enc = serialization.BestAvailableEncryption(password.encode('utf-8'))
    with open(path, 'wb') as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=enc))
    return str(path)


@pytest.fixture
def make_image(tmp_path):
    def _make(size=IMAGE_SIZE, name='fsbl.stm32'):
        src = tmp_path / (name + '.bin')
        src.write_bytes(os.urandom(size - header_size))
        dest = tmp_path / name
        stm32image_create_header_file(str(src), str(dest), 0x2ffc2500,
                                      0x2ffc2500, 0x10)
        return str(dest)
    return _make


@pytest.fixture
def image(make_image):
    return make_image()


@pytest.fixture
def p256_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def brainpool_key():
    return ec.generate_private_key(ec.BrainpoolP256R1())


@pytest.fixture
def p256_key_file(tmp_path, p256_key):
    return write_key(tmp_path / 'rot.pem', p256_key)


@pytest.fixture
def brainpool_key_file(tmp_path, brainpool_key):
    return write_key(tmp_path / 'rot-bp.pem', brainpool_key)


@pytest.fixture
def encrypted_key_file(tmp_path, p256_key):
    return write_key(tmp_path / 'rot-enc.pem', p256_key, PASSWORD)


@pytest.fixture
def secp384r1_key_file(tmp_path):
    key = ec.generate_private_key(ec.SECP384R1())
    return write_key(tmp_path / 'p384.pem', key)


@pytest.fixture
def rsa_key_file(tmp_path):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return write_key(tmp_path / 'rsa.pem', key)


def read(path):
    with open(path, 'rb') as f:
        return f.read()
