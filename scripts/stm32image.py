#!/usr/bin/env python3
# SPDX-License-Identifier: BSD-2-Clause
#
# Copyright (c) 2017-2018, STMicroelectronics
#
import argparse
import logging
import mmap
import os
import struct
import tempfile

#  STM32MP1 v1 image header, all integers little-endian:
#
#   0x00 magic            'S' 'T' 'M' 0x32
#   0x04 signature        R || S, 2 x 32 bytes big-endian
#   0x44 checksum         byte sum of the payload
#   0x48 header_version   <- start of the hashed region
#   0x4c image_length
#   0x50 entry_point
#   0x54 reserved1
#   0x58 load_address
#   0x5c reserved2
#   0x60 version_number
#   0x64 option_flags     bit0=1 no signature
#   0x68 ecdsa_algorithm  1: prime256v1, 2: brainpoolP256r1
#   0x6c ecdsa_public_key X || Y, 2 x 32 bytes
#   0xac padding          83 bytes
#   0xff binary_type      only present in the 0x100 byte variant

header_size = 256
hdr_magic = b'STM2'
hdr_header_ver_variant = 0
hdr_header_ver_minor = 0
hdr_header_ver_major = 1
hdr_version_number = 0
hdr_ecdsa_algo = 1

OPTION_FLAGS_SIGNED = 0
OPTION_FLAGS_UNSIGNED = 1


class Stm32Error(Exception):
    pass


class FormatError(Stm32Error):
    pass


class ImageIOError(Stm32Error):
    pass


class HeaderField:
    def __init__(self, name, offset, size, codec):
        self.name = name
        self.offset = offset
        self.size = size
        self.codec = codec

    @property
    def end(self):
        return self.offset + self.size


def _field_table(layout):
    fields = {}
    offset = 0
    for name, size, codec in layout:
        fields[name] = HeaderField(name, offset, size, codec)
        offset += size
    return fields


# codec is a struct format for integers or None for raw bytes
HEADER_FIELDS = _field_table([
    ('magic', 4, None),
    ('signature', 64, None),
    ('checksum', 4, '<I'),
    ('header_version', 4, None),
    ('image_length', 4, '<I'),
    ('entry_point', 4, '<I'),
    ('reserved1', 4, '<I'),
    ('load_address', 4, '<I'),
    ('reserved2', 4, '<I'),
    ('version_number', 4, '<I'),
    ('option_flags', 4, '<I'),
    ('ecdsa_algorithm', 4, '<I'),
    ('ecdsa_public_key', 64, None),
    ('padding', 83, None),
])

# Size of the record without the trailing binary_type byte. Signing never
# looks past the padding so this is the minimum the image has to exceed.
STM32_HEADER_SIZE = HEADER_FIELDS['padding'].end

# The boot ROM hashes from header_version to the end of the image
STM32_HASH_OFFSET = HEADER_FIELDS['header_version'].offset


class Stm32Header(object):
    '''
        Typed accessors over the header bytes at the start of a buffer.

        Nothing is copied: reads and writes go straight to the underlying
        buffer, which is the one that gets persisted.
    '''

    def __init__(self, buf):
        self._buf = buf

    def _field(self, name):
        try:
            field = HEADER_FIELDS[name]
        except KeyError:
            raise FormatError('Unknown header field: {}'.format(name))
        if field.end > len(self._buf):
            raise FormatError('Header field {} [{}:{}] outside of {} bytes '
                              'buffer'.format(name, field.offset, field.end,
                                              len(self._buf)))
        return field

    def get(self, name):
        field = self._field(name)
        raw = bytes(self._buf[field.offset:field.end])
        if field.codec is None:
            return raw
        return struct.unpack(field.codec, raw)[0]

    def set(self, name, value):
        field = self._field(name)
        if field.codec is None:
            if not isinstance(value, (bytes, bytearray, memoryview)):
                raise FormatError('Header field {} takes bytes, got {}'
                                  .format(name, type(value).__name__))
            raw = bytes(value)
        else:
            try:
                raw = struct.pack(field.codec, value)
            except struct.error as e:
                raise FormatError('Bad value {!r} for header field {}: {}'
                                  .format(value, name, e)) from e
        if len(raw) != field.size:
            raise FormatError('Header field {} is {} bytes, got {}'
                              .format(name, field.size, len(raw)))
        self._buf[field.offset:field.end] = raw

    def __getattr__(self, name):
        if name in HEADER_FIELDS:
            return self.get(name)
        raise AttributeError(name)

    def __setattr__(self, name, value):
        if name in HEADER_FIELDS:
            self.set(name, value)
        else:
            super().__setattr__(name, value)

    def hash_domain(self):
        # Signature and checksum precede the domain, so the signature can
        # be written after hashing.
        if len(self._buf) <= STM32_HASH_OFFSET:
            raise FormatError('Buffer too small for hash domain')
        return memoryview(self._buf)[STM32_HASH_OFFSET:]

    def dump(self, logger=logging.debug):
        for name in HEADER_FIELDS:
            if name == 'padding':
                continue
            value = self.get(name)
            if isinstance(value, bytes):
                logger("\t%-16s= %s" % (name.upper(), value.hex()))
            else:
                logger("\t%-16s= %08X" % (name.upper(), value))


def get_size(file):
    file.seek(0, 2)        # End of the file
    size = file.tell()
    return size


class Stm32Image(object):
    '''
        An image file mapped copy-on-write into memory.

        Mutations made through header or buf stay in memory until persist()
        is called. release() drops them, leaving the file untouched.
    '''

    def __init__(self, path):
        self.path = path
        # Write back to the link target, not over the link
        self.real_path = os.path.realpath(path)
        self._fd = None
        self.buf = None

        try:
            self._fd = open(path, 'r+b')
            self.size = get_size(self._fd)
            if self.size <= STM32_HEADER_SIZE:
                raise FormatError('Image file too small for stm32 header: '
                                  '{} bytes'.format(self.size))
            self._fd.seek(0, 0)
            self.buf = mmap.mmap(self._fd.fileno(), 0,
                                 access=mmap.ACCESS_COPY)
        except OSError as e:
            self.release()
            raise ImageIOError('Cannot load {}: {}'.format(path, e)) from e
        except FormatError:
            self.release()
            raise

        # Not overly rigorous checks, assuming the header was generated by
        # something sane already.
        if self.buf[:len(hdr_magic)] != hdr_magic:
            self.release()
            raise FormatError('Invalid stm32 header magic in {}'.format(path))

        self.header = Stm32Header(self.buf)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()

    @property
    def released(self):
        return self._fd is None

    def persist(self, in_place=False):
        if self.released:
            raise ImageIOError('Image {} already released'.format(self.path))

        try:
            if not in_place and not self._dir_writable():
                logging.debug('%s: directory not writable, writing in place',
                              self.path)
                in_place = True

            if in_place:
                self._fd.seek(0, 0)
                self._fd.write(self.buf)
                self._fd.flush()
                os.fsync(self._fd.fileno())
            else:
                self._replace()
        except OSError as e:
            raise ImageIOError('Cannot write {}: {}'.format(self.path, e)) \
                from e
        finally:
            self.release()

    def _dir_writable(self):
        return os.access(os.path.dirname(self.real_path), os.W_OK | os.X_OK)

    def _replace(self):
        dirname = os.path.dirname(self.real_path)
        fd, tmp = tempfile.mkstemp(prefix='.stm32sign-', dir=dirname)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(self.buf)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, os.stat(self._fd.fileno()).st_mode & 0o7777)
            os.replace(tmp, self.real_path)
        except OSError:
            os.unlink(tmp)
            raise

    def release(self):
        if self.buf is not None:
            self.buf.close()
            self.buf = None
        if self._fd is not None:
            self._fd.close()
            self._fd = None


def stm32image_checksum(dest_fd, sizedest):
    csum = 0
    if sizedest < header_size:
        return 0
    dest_fd.seek(header_size, 0)
    for chunk in iter(lambda: dest_fd.read(4096), b''):
        csum += sum(chunk)
    return csum & 0xffffffff


def stm32image_set_header(dest_fd, load, entry, bintype):
    sizedest = get_size(dest_fd)

    # Fresh images are unsigned: empty signature and key, flag bit0 set
    buf = bytearray(header_size)
    hdr = Stm32Header(buf)
    hdr.magic = hdr_magic
    hdr.checksum = stm32image_checksum(dest_fd, sizedest)
    hdr.header_version = bytes((hdr_header_ver_variant, hdr_header_ver_minor,
                                hdr_header_ver_major, 0))
    hdr.image_length = sizedest - header_size
    hdr.entry_point = entry
    hdr.load_address = load
    hdr.version_number = hdr_version_number
    hdr.option_flags = OPTION_FLAGS_UNSIGNED
    hdr.ecdsa_algorithm = hdr_ecdsa_algo
    struct.pack_into('<B', buf, STM32_HEADER_SIZE, bintype)

    dest_fd.seek(0, 0)
    dest_fd.write(buf)


def stm32image_create_header_file(source, dest, load, entry, bintype):
    # Payload first, the header needs its size and checksum
    with open(dest, 'w+b') as dest_fd:
        dest_fd.write(b'\x00' * header_size)

        with open(source, 'rb') as src_fd:
            if get_size(src_fd) > 0:
                mmsrc = mmap.mmap(src_fd.fileno(), 0,
                                  access=mmap.ACCESS_READ)
                dest_fd.write(mmsrc)
                mmsrc.close()

        stm32image_set_header(dest_fd, load, entry, bintype)


def int_parse(str):
    return int(str, 0)


def get_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Wrap a binary into an unsigned STM32MP1 v1 image.')
    parser.add_argument('--source',
                        required=True,
                        help='Source file')

    parser.add_argument('--dest',
                        required=True,
                        help='Destination file')

    parser.add_argument('--load',
                        required=True, type=int_parse,
                        help='Load address')

    parser.add_argument('--entry',
                        required=True, type=int_parse,
                        help='Entry point')

    parser.add_argument('--bintype',
                        required=True, type=int_parse,
                        help='Binary identification')

    return parser.parse_args(argv)


def main(argv=None):
    args = get_args(argv)

    stm32image_create_header_file(args.source,
                                  args.dest,
                                  args.load,
                                  args.entry,
                                  args.bintype)


if __name__ == "__main__":
    main()
