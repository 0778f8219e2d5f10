#!/usr/bin/env python
# -*- coding: utf8 -*-


import getopt
import logging
import sys
import time
from dataclasses import dataclass

import MFRC522
from Anticol import anticol, anticol_report, open_reader, parse_spi
from Common import Rc522Error, ensure_16_bytes, hex_to_bytes, print_hex, setup_logging, to_hex

lg = logging.getLogger(__name__)

DEFAULT_KEY = 'FFFFFFFFFFFF'
DEFAULT_DATA = '00' * 16


class WriteRefused(Rc522Error):
    """Write to the manufacturer block or a sector trailer without force."""


@dataclass
class BlockWrite:
    block: int
    data: bytes
    readBack: bytes = None
    verified: bool = None


def is_trailer_block(block):
    return MFRC522.MFRC522.isTrailerBlock(block)


def check_write_allowed(block, force=False):
    if force:
        return
    if block == 0 or is_trailer_block(block):
        raise WriteRefused('Refused to write block %d (block 0 or trailer).' % block)


def normalize_key(key):
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    text = str(key or '').strip()
    return hex_to_bytes(text if text else DEFAULT_KEY)


def normalize_data(data):
    if isinstance(data, (bytes, bytearray)):
        return ensure_16_bytes(data)
    text = str(data or '').strip()
    return ensure_16_bytes(text if text else DEFAULT_DATA)


def read_block(mf_reader, uid, block, key=DEFAULT_KEY):
    mf_reader.mifareAuthKeyA(block, normalize_key(key), uid)
    return mf_reader.mifareReadBlock(block)


def write_block(mf_reader, uid, block, data, key=DEFAULT_KEY, verify=False):
    """Authenticate and write one block, optionally reading it back.

    Write policy is not checked here, see check_write_allowed().
    """
    key = normalize_key(key)
    payload = normalize_data(data)
    mf_reader.mifareAuthKeyA(block, key, uid)
    mf_reader.mifareWriteBlock(block, payload)

    result = BlockWrite(block=block, data=payload)
    if verify:
        # Read back runs under a fresh authentication
        result.readBack = read_block(mf_reader, uid, block, key)
        result.verified = result.readBack == payload
        if not result.verified:
            lg.warning('block %d read back %s, wrote %s', block, to_hex(result.readBack), to_hex(payload))
    return result


def usage(program_name):
    print('Usage: %s r|w [-b block] [-k key] [-d data] [-V] [-f] [-t seconds] [-s bus.dev] [-u port] [-v]' % program_name)
    print('  r|w          read or write one block')
    print('  -b block     block number, default 8')
    print('  -k key       Key A as 12 hex digits, default FFFFFFFFFFFF')
    print('  -d data      block data as hex, padded/truncated to 16 bytes, default zeros')
    print('  -V           read the block back after writing and compare')
    print('  -f           allow writing block 0 and sector trailers')
    print('  -t seconds   how long to wait for a card, default 10')
    print('  -s bus.dev   SPI bus and chip select, default 1.0')
    print('  -u port      use a UART reader on port instead of SPI ("auto" to search)')
    print('  -v           debug logging')
    print('Examples:')
    print('  %s r -b 8' % program_name)
    print('  %s w -b 8 -d 00112233445566778899aabbccddeeff -V' % program_name)


def wait_for_card(mf_reader, timeout):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        card = anticol(mf_reader)
        if card is not None:
            return card
        time.sleep(0.1)
    return None


def main():
    if len(sys.argv) < 2 or sys.argv[1] not in ['r', 'w']:
        usage(sys.argv[0])
        exit(-1)
    action_write = sys.argv[1] == 'w'

    try:
        optlist, _ = getopt.getopt(sys.argv[2:], 'hvVfb:k:d:t:s:u:')
    except getopt.GetoptError as err:
        print(err)
        usage(sys.argv[0])
        exit(-1)

    block = 8
    key = DEFAULT_KEY
    data = DEFAULT_DATA
    verify = False
    force = False
    timeout = 10.0
    spi = None
    port = None
    verbose = False
    for (opt_key, opt_value) in optlist:
        if opt_key == '-h':
            usage(sys.argv[0])
            exit(0)
        elif opt_key == '-b':
            block = int(opt_value, 0)
        elif opt_key == '-k':
            key = opt_value
        elif opt_key == '-d':
            data = opt_value
        elif opt_key == '-V':
            verify = True
        elif opt_key == '-f':
            force = True
        elif opt_key == '-t':
            timeout = float(opt_value)
        elif opt_key == '-s':
            spi = parse_spi(opt_value)
        elif opt_key == '-u':
            port = '' if opt_value == 'auto' else opt_value
        elif opt_key == '-v':
            verbose = True
    setup_logging(verbose)

    try:
        key = normalize_key(key)
        data = normalize_data(data)
    except ValueError as err:
        print('Error: %s' % err)
        exit(-1)
    if len(key) != 6:
        print('Error, Key A must be 12 hex digits.')
        exit(-1)
    if action_write:
        try:
            check_write_allowed(block, force)
        except WriteRefused as err:
            print('Error: %s Use -f to force.' % err)
            exit(-1)

    try:
        mf_reader = open_reader(spi=spi, port=port)
    except Rc522Error as err:
        print('Could not open reader: %s' % err)
        exit(-10)

    success = False
    try:
        card = wait_for_card(mf_reader, timeout)
        if card is None:
            print('Error: no tag was found')
        else:
            anticol_report(card)
            if card.sak is not None and card.sak & 0x08 == 0:
                print('Warning: tag is probably not a MFC!')
            try:
                if action_write:
                    result = write_block(mf_reader, card.uid, block, data, key, verify)
                    print_hex('Block %d written: ' % block, result.data)
                    if verify:
                        print_hex('Block %d read back: ' % block, result.readBack)
                        print('Verified.' if result.verified else 'Error: read back differs!')
                    success = result.verified is not False
                else:
                    print('Block %d: %s' % (block, to_hex(read_block(mf_reader, card.uid, block, key))))
                    success = True
            finally:
                mf_reader.stopCrypto1()
    except Rc522Error as err:
        print('Error: %s' % err)
    finally:
        mf_reader.close()
    exit(0 if success else -1)


if __name__ == '__main__':
    main()
