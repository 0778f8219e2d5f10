#!/usr/bin/env python
# -*- coding: utf8 -*-

import getopt
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass

import MFRC522
from Anticol import anticol, parse_spi
from Common import Rc522Error, TransportError, end_read, setup_logging, should_read, to_hex
from MFClassic import (DEFAULT_DATA, DEFAULT_KEY, WriteRefused, check_write_allowed, normalize_data,
                       normalize_key, read_block, write_block)
from Transport import SpiTransport, UartTransport

lg = logging.getLogger(__name__)

ACTIONS = ('uid', 'read', 'write')


@dataclass
class ReaderConfig:
    bus: int = 1
    device: int = 0
    speedHz: int = 1000000
    # UART port, '' to search for one; None means SPI
    port: str = None
    mode: str = 'uid'
    auto: bool = True
    pollMs: int = 250
    block: int = 8
    keyA: str = DEFAULT_KEY
    data: str = DEFAULT_DATA
    verify: bool = False
    emitRemoved: bool = True
    removedMs: int = 500

    def __post_init__(self):
        if self.mode not in ACTIONS:
            raise ValueError('mode must be one of %s, got %r' % ('|'.join(ACTIONS), self.mode))
        self.pollMs = max(80, int(self.pollMs))
        self.removedMs = max(100, int(self.removedMs))
        self.keyA = str(self.keyA or '').strip() or DEFAULT_KEY
        self.data = str(self.data or '').strip() or DEFAULT_DATA

    def make_transport(self):
        if self.port is not None:
            return UartTransport(port=self.port or None)
        return SpiTransport(bus=self.bus, device=self.device, speedHz=self.speedHz)


def now_ms():
    return int(time.time() * 1000)


def parse_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class Rc522Poller:
    """
    Turns detection cycles into present/removed/uid/read/write messages.

    send(msg) receives dicts with 'topic' and 'payload'. status(fill, shape,
    text) mirrors the reader state for a UI and is optional.
    """

    def __init__(self, config, send, status=None, reader=None):
        self.config = config
        self.send = send
        self.status = status
        self.reader = reader
        self.ready = False
        self.busy = False

        self.present = None
        self.lastSeenTs = 0
        # uid of the card the automatic read/write already ran for
        self.actionUid = None

    def setStatus(self, fill, shape, text):
        lg.info('%s', text)
        if self.status is not None:
            self.status(fill, shape, text)

    def ensureReader(self):
        if self.ready:
            return
        if self.reader is None:
            self.reader = MFRC522.MFRC522(transport=self.config.make_transport())
        self.reader.open()
        self.reader.init()
        self.ready = True
        self.setStatus('green', 'dot', 'ready %r' % self.reader.transport)

    def close(self):
        if self.reader is not None:
            self.reader.close()
        self.ready = False

    def buildMessage(self, topic, card):
        return {
            'topic': topic,
            'payload': {
                'uid': card.uid_hex,
                'sak': card.sak_hex,
                'atqa': card.atqa_hex,
                'bus': self.config.bus,
                'dev': self.config.device,
                'ts': now_ms(),
            },
        }

    def emitRemoved(self, reason):
        if self.present is None:
            return
        card = self.present
        self.present = None
        self.actionUid = None
        if not self.config.emitRemoved:
            return
        msg = self.buildMessage('removed', card)
        msg['payload'].update(event='removed', reason=reason)
        self.send(msg)
        self.setStatus('grey', 'ring', 'removed %s' % card.uid_hex)

    def emitPresent(self, card, reason='detected'):
        self.present = card
        msg = self.buildMessage('present', card)
        msg['payload'].update(event='present', reason=reason)
        self.send(msg)
        self.setStatus('blue', 'dot', 'present %s' % card.uid_hex)

    def handleCard(self, action=None, overrides=None):
        """Run one detection cycle and the requested action on the card found."""
        if self.busy:
            return
        self.busy = True
        overrides = overrides or {}
        try:
            self.ensureReader()
            self._handleCard(action, overrides)
        except TransportError as err:
            lg.error('reader failed: %s', err)
            self.setStatus('red', 'ring', str(err))
            # Reopen and re-init on the next cycle
            self.close()
        except (Rc522Error, ValueError) as err:
            lg.error('%s', err)
            self.setStatus('red', 'ring', str(err))
        finally:
            self.busy = False

    def _handleCard(self, action, overrides):
        now = now_ms()
        card = anticol(self.reader)

        if card is None:
            if self.present is not None and (now - self.lastSeenTs) >= self.config.removedMs:
                self.emitRemoved('no_card')
            if self.present is None:
                self.setStatus('grey', 'ring', 'no card')
            return

        self.lastSeenTs = now
        if self.present is not None and card.uid != self.present.uid:
            self.emitRemoved('changed')
        if self.present is None:
            self.emitPresent(card)

        useAction = str(overrides.get('action') or action or self.config.mode)
        useBlock = parse_int(overrides.get('block'), self.config.block)
        triggered = bool(overrides.get('triggered'))

        if useAction not in ACTIONS:
            lg.warning('ignoring unknown action %r', useAction)
            return

        if useAction == 'uid':
            if triggered:
                self.send(self.buildMessage('uid', card))
                self.setStatus('blue', 'dot', 'uid %s' % card.uid_hex)
            return

        if useAction == 'write':
            try:
                check_write_allowed(useBlock)
            except WriteRefused as err:
                lg.error('%s', err)
                self.setStatus('red', 'ring', 'refused block %d' % useBlock)
                return

        # Polling runs read/write once per card; triggers always run
        if not triggered and self.actionUid == card.uid:
            return

        key = normalize_key(overrides.get('keyA') or self.config.keyA)
        try:
            if useAction == 'read':
                data = read_block(self.reader, card.uid, useBlock, key)
                msg = self.buildMessage('read', card)
                msg['payload'].update(event='read', block=useBlock, data=to_hex(data))
                self.send(msg)
                self.setStatus('green', 'dot', 'read b%d' % useBlock)
            else:
                data = normalize_data(overrides.get('data') or self.config.data)
                result = write_block(self.reader, card.uid, useBlock, data, key, self.config.verify)
                msg = self.buildMessage('write', card)
                msg['payload'].update(event='write', block=useBlock, data=to_hex(result.data))
                if self.config.verify:
                    msg['payload'].update(readBack=to_hex(result.readBack), verified=result.verified)
                self.send(msg)
                self.setStatus('yellow', 'dot', 'write b%d' % useBlock)
        finally:
            self.stopCrypto()
        self.actionUid = card.uid

    def stopCrypto(self):
        # Crypto1 must be off before the next REQA
        try:
            self.reader.stopCrypto1()
        except Rc522Error as err:
            lg.debug('stopCrypto1 failed: %s', err)

    def trigger(self, msg):
        """Handle an input message; fields may sit on msg or on msg['payload']."""
        payload = msg.get('payload')
        if not isinstance(payload, dict):
            payload = {}

        def pick(name):
            value = msg.get(name)
            return value if value is not None else payload.get(name)

        overrides = {
            'triggered': True,
            'action': pick('action') or msg.get('topic') or self.config.mode,
            'block': pick('block'),
            'keyA': pick('keyA'),
            'data': pick('data'),
        }
        self.handleCard(overrides['action'], overrides)

    def run(self):
        try:
            self.ensureReader()
        except Rc522Error as err:
            lg.error('init failed: %s', err)
            self.setStatus('red', 'ring', str(err))
        self.lastSeenTs = now_ms()
        if not self.config.auto:
            self.setStatus('green', 'ring', 'waiting trigger')
            return
        self.setStatus('green', 'dot', 'poll %dms' % self.config.pollMs)
        while should_read():
            self.handleCard(self.config.mode)
            time.sleep(self.config.pollMs / 1000.0)


def usage(program_name):
    print('Usage: %s [-h] [-v] [-m uid|read|write] [-b block] [-k key] [-d data] [-V]' % program_name)
    print('          [-i pollMs] [-r removedMs] [-R] [-s bus.dev] [-S speed] [-u port]')
    print('  -m mode       action per card, default uid')
    print('  -b block      block for read/write, default 8')
    print('  -k key        Key A as 12 hex digits, default FFFFFFFFFFFF')
    print('  -d data       write data as hex, default zeros')
    print('  -V            verify writes by reading back')
    print('  -i pollMs     poll interval, default 250 (min 80)')
    print('  -r removedMs  report removal after this long without the card, default 500 (min 100)')
    print('  -R            do not report removals')
    print('  -s bus.dev    SPI bus and chip select, default 1.0')
    print('  -S speed      SPI clock in Hz, default 1000000')
    print('  -u port       use a UART reader on port instead of SPI ("auto" to search)')
    print('Messages are written to stdout, one JSON object per line.')


def main():
    try:
        optlist, _ = getopt.getopt(sys.argv[1:], 'hvVRm:b:k:d:i:r:s:S:u:')
    except getopt.GetoptError as err:
        print(err)
        usage(sys.argv[0])
        exit(-1)

    options = {}
    verbose = False
    for (opt_key, opt_value) in optlist:
        if opt_key == '-h':
            usage(sys.argv[0])
            exit(0)
        elif opt_key == '-v':
            verbose = True
        elif opt_key == '-V':
            options['verify'] = True
        elif opt_key == '-R':
            options['emitRemoved'] = False
        elif opt_key == '-m':
            options['mode'] = opt_value
        elif opt_key == '-b':
            options['block'] = int(opt_value, 0)
        elif opt_key == '-k':
            options['keyA'] = opt_value
        elif opt_key == '-d':
            options['data'] = opt_value
        elif opt_key == '-i':
            options['pollMs'] = int(opt_value)
        elif opt_key == '-r':
            options['removedMs'] = int(opt_value)
        elif opt_key == '-s':
            options['bus'], options['device'] = parse_spi(opt_value)
        elif opt_key == '-S':
            options['speedHz'] = int(opt_value)
        elif opt_key == '-u':
            options['port'] = '' if opt_value == 'auto' else opt_value
    setup_logging(verbose)

    try:
        config = ReaderConfig(**options)
    except ValueError as err:
        print('Error: %s' % err)
        usage(sys.argv[0])
        exit(-1)

    signal.signal(signal.SIGINT, end_read)

    def send(msg):
        print(json.dumps(msg), flush=True)

    poller = Rc522Poller(config, send)
    try:
        poller.run()
    finally:
        poller.close()


if __name__ == '__main__':
    main()
