#!/usr/bin/env python
# -*- coding: utf8 -*-

import logging
import re

from serial.tools import list_ports

continue_reading = True

BLOCK_SIZE = 16


class Rc522Error(Exception):
    pass


class TransportError(Rc522Error):
    """Bus exchange failed below the register layer."""


class CrcTimeout(Rc522Error):
    pass


class TransceiveError(Rc522Error):
    def __init__(self, errorReg):
        super().__init__('Transceive ErrorReg=0x%02x' % errorReg)
        self.errorReg = errorReg


class AuthError(Rc522Error):
    def __init__(self, errorReg):
        super().__init__('Auth ErrorReg=0x%02x' % errorReg)
        self.errorReg = errorReg


class AuthFailed(Rc522Error):
    """Crypto1 was not switched on after MFAuthent."""


class InvalidKeyLength(Rc522Error):
    pass


class ShortRead(Rc522Error):
    def __init__(self, count):
        super().__init__('Read returned %d bytes' % count)
        self.count = count


class WriteNotAcked(Rc522Error):
    def __init__(self, phase, data, rxLastBits):
        super().__init__('No ACK on write phase%d (data=%s rxLastBits=%d)' % (phase, to_hex(data), rxLastBits))
        self.phase = phase
        self.data = bytes(data)
        self.rxLastBits = rxLastBits


def to_hex(data):
    return bytes(data).hex()


def print_hex(prompt, data, end=None):
    print(prompt + ' '.join(['%02x' % x for x in data]), end=end)


def hex_to_bytes(text):
    clean = re.sub('[^0-9a-f]', '', str(text).strip().lower())
    if len(clean) % 2 != 0:
        raise ValueError('hex string must have even length')
    return bytes.fromhex(clean)


def ensure_16_bytes(data):
    """Zero-pad or truncate to one MIFARE block. Hex strings are accepted too."""
    if isinstance(data, str):
        data = hex_to_bytes(data)
    data = bytes(data)[:BLOCK_SIZE]
    return data + bytes(BLOCK_SIZE - len(data))


def end_read(signal, frame):
    global continue_reading
    print("Ctrl+C captured, exit...")
    continue_reading = False


def should_read():
    return continue_reading


def auto_find_port():
    valid_ports = list(list_ports.grep('USB-SERIAL'))
    if len(valid_ports) > 0:
        return valid_ports[0].device
    raise TransportError('No valid COM port found!')


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
