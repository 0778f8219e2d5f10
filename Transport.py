#!/usr/bin/env python
# -*- coding: utf8 -*-

import logging
import time

import serial
import spidev

from Common import TransportError, auto_find_port

lg = logging.getLogger(__name__)


class SpiTransport:
    """spidev handle for one bus/device/speed triple."""

    def __init__(self, bus=1, device=0, speedHz=1000000):
        self.bus = int(bus)
        self.device = int(device)
        self.speedHz = int(speedHz)
        self.spi = None

    def __repr__(self):
        return 'spidev%d.%d' % (self.bus, self.device)

    @property
    def is_open(self):
        return self.spi is not None

    def open(self):
        if self.spi is not None:
            return
        spi = spidev.SpiDev()
        try:
            spi.open(self.bus, self.device)
            spi.mode = 0
            spi.max_speed_hz = self.speedHz
        except OSError as err:
            raise TransportError('Could not open %r: %s' % (self, err)) from err
        self.spi = spi
        lg.debug('opened %r at %d Hz', self, self.speedHz)

    def close(self):
        if self.spi is None:
            return
        try:
            self.spi.close()
        except OSError as err:
            lg.debug('ignoring close error on %r: %s', self, err)
        self.spi = None

    def exchange(self, txBuf):
        if self.spi is None:
            raise TransportError('%r is not open' % self)
        try:
            rx = self.spi.xfer2(list(txBuf))
        except OSError as err:
            raise TransportError('SPI transfer failed on %r: %s' % (self, err)) from err
        return bytes(rx)

    def afterReset(self):
        pass


class UartTransport:
    """
    RC522 wired in UART mode.

    Accepts the same SPI-framed buffers as SpiTransport: the first byte is
    (reg << 1) with bit 7 set for reads. Writes are replayed as address/data
    pairs and the chip echoes the address; reads send one address byte per
    requested value.
    """

    RESET_BAUDRATE = 9600
    SerialSpeedReg = 0x1F
    CommandReg = 0x01
    PCD_RESETPHASE = 0x0F
    # SerialSpeedReg value for each supported line rate
    SPEEDS = {9600: 0xEB, 115200: 0x7A, 460800: 0x3A, 1228800: 0x15}
    WRITE_RETRIES = 10

    def __init__(self, port=None, baudrate=1228800, timeout=0.1):
        if baudrate not in self.SPEEDS:
            raise ValueError('unsupported baudrate %d' % baudrate)
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.ser = None

    def __repr__(self):
        return 'uart:%s' % self.port

    @property
    def is_open(self):
        return self.ser is not None

    def open(self):
        if self.ser is not None:
            return
        if self.port is None:
            self.port = auto_find_port()
        try:
            self.ser = serial.Serial(port=self.port, baudrate=self.RESET_BAUDRATE, timeout=self.timeout)
        except serial.SerialException as err:
            raise TransportError('Could not open %s: %s' % (self.port, err)) from err
        self._switchSpeed()

    def close(self):
        if self.ser is None:
            return
        try:
            self.ser.close()
        except (OSError, serial.SerialException) as err:
            lg.debug('ignoring close error on %r: %s', self, err)
        self.ser = None

    def afterReset(self):
        # Soft reset drops the chip back to 9600 baud
        self.ser.baudrate = self.RESET_BAUDRATE
        self._switchSpeed()

    def _switchSpeed(self):
        if self.baudrate == self.RESET_BAUDRATE:
            return
        try:
            self._writeRegister(self.SerialSpeedReg, self.SPEEDS[self.baudrate])
        except TransportError:
            # Chip may still be at the fast rate from an earlier session
            self.ser.baudrate = self.baudrate
            self.ser.write(bytes([self.CommandReg, self.PCD_RESETPHASE]))
            self.ser.baudrate = self.RESET_BAUDRATE
            time.sleep(0.05)
            self._writeRegister(self.SerialSpeedReg, self.SPEEDS[self.baudrate])
        self.ser.baudrate = self.baudrate
        lg.debug('%r switched to %d baud', self, self.baudrate)

    def _writeRegister(self, reg, val):
        try:
            for _ in range(self.WRITE_RETRIES):
                self.ser.reset_input_buffer()
                self.ser.write(bytes([reg & 0x7F, val & 0xFF]))
                if self.ser.read(1) == bytes([reg]):
                    return
        except serial.SerialException as err:
            raise TransportError('UART write failed on %r: %s' % (self, err)) from err
        raise TransportError('Write register error at [%02x]' % reg)

    def _readRegister(self, reg):
        try:
            self.ser.reset_input_buffer()
            self.ser.write(bytes([reg | 0x80]))
            val = self.ser.read(1)
        except serial.SerialException as err:
            raise TransportError('UART read failed on %r: %s' % (self, err)) from err
        if len(val) != 1:
            raise TransportError('Read register timeout at [%02x]' % reg)
        return val[0]

    def exchange(self, txBuf):
        if self.ser is None:
            raise TransportError('%r is not open' % self)
        reg = (txBuf[0] >> 1) & 0x3F
        if txBuf[0] & 0x80:
            return bytes([0]) + bytes(self._readRegister(reg) for _ in txBuf[1:])
        for val in txBuf[1:]:
            if reg == self.CommandReg and val == self.PCD_RESETPHASE:
                # No echo is guaranteed once the reset starts
                self.ser.write(bytes([reg, val]))
                continue
            self._writeRegister(reg, val)
        return bytes(len(txBuf))
