#!/usr/bin/env python
# -*- coding: utf8 -*-


import getopt
import logging
import signal
import sys
import time
from dataclasses import dataclass

import MFRC522
from Common import Rc522Error, end_read, print_hex, setup_logging, should_read, to_hex
from Transport import SpiTransport, UartTransport

lg = logging.getLogger(__name__)


@dataclass
class CardInfo:
    uid: bytes
    sak: int
    atqa: bytes

    @property
    def uid_hex(self):
        return to_hex(self.uid)

    @property
    def atqa_hex(self):
        return to_hex(self.atqa)

    @property
    def sak_hex(self):
        return None if self.sak is None else '0x%02x' % self.sak


def anticol_report(card):
    print('\nFound tag with')
    print_hex(' UID: ', card.uid)
    print('ATQA: %s\n SAK: %s' % (card.atqa_hex, card.sak_hex))


def anticol(mf_reader: MFRC522.MFRC522, print_info=False):
    """One detection cycle: REQA, anticollision and select at cascade level 1.

    Returns None when no card (or no consistent UID) was found; a card that
    answers anticollision but not select is reported with sak None.
    """
    atqa = mf_reader.requestA()
    if atqa is None:
        return None

    # Get the UID of the card
    uid = mf_reader.anticollCL1()
    if uid is None:
        return None

    # Select the scanned tag
    sel = mf_reader.selectCL1(uid)
    card = CardInfo(uid=uid, sak=sel.sak if sel is not None else None, atqa=atqa)

    if print_info:
        anticol_report(card)
    return card


def open_reader(spi=None, port=None, speed=1000000):
    """Open and init a reader on spidev<bus>.<device> or a UART port."""
    if port is not None:
        transport = UartTransport(port=port or None)
    else:
        bus, device = spi if spi is not None else (1, 0)
        transport = SpiTransport(bus=bus, device=device, speedHz=speed)
    mf_reader = MFRC522.MFRC522(transport=transport)
    mf_reader.open()
    try:
        mf_reader.init()
    except Rc522Error:
        mf_reader.close()
        raise
    return mf_reader


def parse_spi(value):
    bus, _, device = value.partition('.')
    return int(bus), int(device or 0)


def usage(program_name):
    print('Usage: %s [-h] [-v] [-s bus.dev] [-S speed] [-u port] [-i interval]' % program_name)
    print('  -s bus.dev   SPI bus and chip select, default 1.0')
    print('  -S speed     SPI clock in Hz, default 1000000')
    print('  -u port      use a UART reader on port instead of SPI ("auto" to search)')
    print('  -i interval  poll interval in ms, default 250')
    print('  -v           debug logging')


def main():
    try:
        optlist, _ = getopt.getopt(sys.argv[1:], 'hvs:S:u:i:')
    except getopt.GetoptError as err:
        print(err)
        usage(sys.argv[0])
        exit(-1)

    spi = None
    port = None
    speed = 1000000
    interval = 250
    verbose = False
    for (opt_key, opt_value) in optlist:
        if opt_key == '-h':
            usage(sys.argv[0])
            exit(0)
        elif opt_key == '-v':
            verbose = True
        elif opt_key == '-s':
            spi = parse_spi(opt_value)
        elif opt_key == '-S':
            speed = int(opt_value)
        elif opt_key == '-u':
            port = '' if opt_value == 'auto' else opt_value
        elif opt_key == '-i':
            interval = max(80, int(opt_value))
    setup_logging(verbose)

    # Hook the SIGINT
    signal.signal(signal.SIGINT, end_read)

    try:
        mf_reader = open_reader(spi=spi, port=port, speed=speed)
    except Rc522Error as err:
        print('Could not open reader: %s' % err)
        exit(-10)

    print("Welcome to the MFRC522(%r) port of nfc-anticol" % mf_reader.transport)
    print("Press Ctrl-C to stop.")

    last_uid = None
    try:
        while should_read():
            try:
                card = anticol(mf_reader)
            except Rc522Error as err:
                lg.warning('detection failed: %s', err)
                card = None
            if card is not None and card.uid != last_uid:
                anticol_report(card)
            last_uid = card.uid if card is not None else None
            time.sleep(interval / 1000.0)
    finally:
        mf_reader.close()


if __name__ == '__main__':
    main()
