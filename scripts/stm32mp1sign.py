#!/usr/bin/env python3
# SPDX-License-Identifier: BSD-2-Clause
#
# Copyright (C) 2022, Christian Melki
#

import getpass
import logging
import os
import sys

from cryptography import exceptions
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils

from stm32image import (FormatError, ImageIOError, OPTION_FLAGS_SIGNED,
                        Stm32Error, Stm32Image)

logger = logging.getLogger(os.path.basename(__file__))

# The ec pubkeys for allowed curves are 65 bytes: one byte describing the
# format followed by the x and y coordinates, 32 bytes each.
EC_POINT_UNCOMPRESSED_LEN = 65
EC_POINT_UNCOMPRESSED_TAG = 0x04
EC_COORDINATE_SIZE = 32

# Curve name to header ecdsa_algorithm value. Only these curves are allowed.
ENUM_ECDSA_ALGORITHM = dict(
    secp256r1=1,        # prime256v1
    brainpoolP256r1=2,
)


class PrivateKeyError(Stm32Error):
    pass


class CurveError(Stm32Error):
    pass


class SignError(Stm32Error):
    pass


def prompt_password():
    return getpass.getpass('Privkey password: ')


def load_private_key(key_path, password=None,
                     secret_provider=prompt_password):
    """
    Load a PEM EC private key. An encrypted key is decrypted with password,
    or with whatever secret_provider returns when no password was given.
    The provider is only asked when the key is actually encrypted.
    """
    try:
        with open(key_path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise PrivateKeyError('Unable to load privkey {}: {}'
                              .format(key_path, e)) from e

    try:
        try:
            key = serialization.load_pem_private_key(
                data, password=None, backend=default_backend())
        except TypeError:
            # Encrypted key, we need a password
            if password is None:
                password = secret_provider()
            if not password:
                raise PrivateKeyError('No password given for privkey {}'
                                      .format(key_path))
            if isinstance(password, str):
                password = password.encode('utf-8')
            key = serialization.load_pem_private_key(
                data, password=password, backend=default_backend())
    except (ValueError, TypeError, exceptions.UnsupportedAlgorithm) as e:
        raise PrivateKeyError('Unable to load privkey {}: {}'
                              .format(key_path, e)) from e

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise PrivateKeyError('Privkey {} is not an EC type'.format(key_path))

    return key


def encode_public_key(key):
    """
    Return the uncompressed public point of key and the matching
    ecdsa_algorithm value.
    """
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise PrivateKeyError('Key {} cannot be used to sign'
                              .format(type(key).__name__))

    alg = ENUM_ECDSA_ALGORITHM.get(key.curve.name)
    if alg is None:
        raise CurveError('Invalid EC curve in use: {}'.format(key.curve.name))

    buf = key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint)
    if (len(buf) != EC_POINT_UNCOMPRESSED_LEN or
            buf[0] != EC_POINT_UNCOMPRESSED_TAG):
        raise FormatError('EC pubkey invalid length: {}'.format(len(buf)))

    return buf, alg


def int_to_fixed_bytes(x, size=EC_COORDINATE_SIZE):
    if x < 0 or x.bit_length() > size * 8:
        raise SignError('Signature component does not fit in {} bytes'
                        .format(size))
    return x.to_bytes(size, 'big')


def signature_to_raw(der_sig):
    """Convert a DER ECDSA signature to the header's R || S layout."""
    r, s = utils.decode_dss_signature(der_sig)
    return int_to_fixed_bytes(r) + int_to_fixed_bytes(s)


def sign_domain(key, data, deterministic=False):
    chosen_hash = hashes.SHA256()

    try:
        h = hashes.Hash(chosen_hash, default_backend())
        h.update(data)
        digest = h.finalize()

        if deterministic:
            algorithm = ec.ECDSA(utils.Prehashed(chosen_hash),
                                 deterministic_signing=True)
        else:
            algorithm = ec.ECDSA(utils.Prehashed(chosen_hash))
        der_sig = key.sign(digest, algorithm)
    except (ValueError, TypeError, exceptions.UnsupportedAlgorithm) as e:
        raise SignError('Unable to generate ECDSA signature: {}'
                        .format(e)) from e

    return signature_to_raw(der_sig)


def sign_header(header, key, deterministic=False, encoded=None):
    # Everything that can be rejected is checked before the first write
    if encoded is None:
        encoded = encode_public_key(key)
    pubkey, alg = encoded

    # Raw bignum, x concatenated with y. First byte is the format, skip it.
    header.ecdsa_public_key = pubkey[1:]
    # 1: prime256v1, 2: brainpoolP256r1
    header.ecdsa_algorithm = alg
    # 0: signed, 1: not signed
    header.option_flags = OPTION_FLAGS_SIGNED

    # The hash covers the fields written above
    with header.hash_domain() as domain:
        sig = sign_domain(key, domain, deterministic)

    header.signature = sig


class SignSession(object):
    '''
        Sequences one signing run over an image file.

        start -> image-loaded -> key-loaded -> pubkey-encoded -> signed
        -> persisted, or failed from any of them. A failed session releases
        the image without writing it back.
    '''

    def __init__(self, image_path, key_path, password=None,
                 secret_provider=prompt_password, in_place=False,
                 deterministic=False):
        self.image_path = image_path
        self.key_path = key_path
        self.password = password
        self.secret_provider = secret_provider
        self.in_place = in_place
        self.deterministic = deterministic
        self.state = 'start'
        self.error = None

    def _enter(self, state):
        logging.debug('%s: %s -> %s', self.image_path, self.state, state)
        self.state = state

    def run(self):
        try:
            with Stm32Image(self.image_path) as image:
                self._enter('image-loaded')
                image.header.dump()

                key = load_private_key(self.key_path, self.password,
                                       self.secret_provider)
                self._enter('key-loaded')

                encoded = encode_public_key(key)
                self._enter('pubkey-encoded')

                sign_header(image.header, key, self.deterministic, encoded)
                self._enter('signed')
                image.header.dump()

                image.persist(self.in_place)
                self._enter('persisted')
        except Stm32Error as e:
            self.error = e
            self._enter('failed')
            raise


def sign_image(image_path, key_path, password=None,
               secret_provider=prompt_password, in_place=False,
               deterministic=False):
    session = SignSession(image_path, key_path, password, secret_provider,
                          in_place, deterministic)
    session.run()
    return session


def get_args(argv=None):
    import argparse

    class ArgumentParser(argparse.ArgumentParser):
        def error(self, message):
            self.print_usage(sys.stderr)
            self.exit(1, '%s: error: %s\n' % (self.prog, message))

    parser = ArgumentParser(
        description='Sign an STM32MP1 v1 image header with an ECDSA key. '
                    'The image is modified in place.')
    parser.add_argument('--image', required=True,
                        help='Path to stm32image file to sign')
    parser.add_argument('--key', required=True,
                        help='Path to the private key used to sign hash. '
                             'Must contain private and public key.')
    parser.add_argument('--password', required=False,
                        help='Private key password. If not used, program '
                             'will ask interactively.')
    parser.add_argument('--in-place', action='store_true', default=False,
                        help='Write back through the open image file '
                             'instead of replacing it atomically')
    parser.add_argument('--deterministic', action='store_true',
                        default=False,
                        help='Use deterministic (RFC 6979) ECDSA nonces')
    parser.add_argument('-v', '--verbose', action='store_true',
                        default=False, help='Dump header fields')

    return parser.parse_args(argv)


def main(argv=None):
    args = get_args(argv)

    logging.basicConfig(stream=sys.stderr,
                        level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        sign_image(args.image, args.key, args.password,
                   in_place=args.in_place, deterministic=args.deterministic)
    except Stm32Error as e:
        logger.error(e)
        sys.exit(1)

    logger.info('Successfully signed image.')


if __name__ == "__main__":
    main()
