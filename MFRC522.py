#!/usr/bin/env python
# -*- coding: utf8 -*-

import logging
import time
from dataclasses import dataclass

from Common import (AuthError, AuthFailed, CrcTimeout, InvalidKeyLength, Rc522Error, ShortRead,
                    TransceiveError, WriteNotAcked, ensure_16_bytes, hex_to_bytes)
from Transport import SpiTransport

lg = logging.getLogger(__name__)


@dataclass
class TransceiveResult:
    data: bytes
    rxLastBits: int
    errorReg: int
    irqReg: int
    fifo: int = 0
    note: str = None


@dataclass
class SelectResult:
    sak: int
    raw: bytes


class MFRC522:
    PCD_IDLE = 0x00
    PCD_CALCCRC = 0x03
    PCD_TRANSCEIVE = 0x0C
    PCD_AUTHENT = 0x0E
    PCD_RESETPHASE = 0x0F

    PICC_REQA = 0x26
    PICC_SEL_CL1 = 0x93
    PICC_ANTICOLL_CL1 = 0x20
    PICC_SELECT_CL1 = 0x70
    PICC_AUTHENT1A = 0x60
    PICC_READ = 0x30
    PICC_WRITE = 0xA0

    MIFARE_ACK = 0x0A

    CommandReg = 0x01
    CommIrqReg = 0x04
    DivIrqReg = 0x05
    ErrorReg = 0x06
    Status2Reg = 0x08
    FIFODataReg = 0x09
    FIFOLevelReg = 0x0A
    ControlReg = 0x0C
    BitFramingReg = 0x0D
    CollReg = 0x0E

    ModeReg = 0x11
    TxControlReg = 0x14
    TxASKReg = 0x15

    CRCResultRegM = 0x21
    CRCResultRegL = 0x22

    TModeReg = 0x2A
    TPrescalerReg = 0x2B
    TReloadRegH = 0x2C
    TReloadRegL = 0x2D

    VersionReg = 0x37

    # CommIrqReg bits
    IRQ_TIMER = 0x01
    IRQ_IDLE = 0x10
    IRQ_RX = 0x20
    IRQ_ALL = 0x7F
    # DivIrqReg bits
    IRQ_CRC = 0x04
    # BufferOvfl, CollErr, ParityErr, ProtocolErr
    ERROR_MASK = 0x1B
    FIFO_FLUSH = 0x80
    START_SEND = 0x80
    CRYPTO1_ON = 0x08
    ANTENNA_BITS = 0x03

    CRC_TIMEOUT_MS = 50
    AUTH_TIMEOUT_MS = 150
    DETECT_TIMEOUT_MS = 80
    READ_TIMEOUT_MS = 250
    WRITE_CMD_TIMEOUT_MS = 250
    WRITE_DATA_TIMEOUT_MS = 400
    RESET_SETTLE = 0.05

    def __init__(self, transport=None, bus=1, device=0, speedHz=1000000):
        if transport is None:
            transport = SpiTransport(bus=bus, device=device, speedHz=speedHz)
        self.transport = transport

    def open(self):
        self.transport.open()

    def close(self):
        try:
            self.transport.close()
        except (Rc522Error, OSError) as err:
            lg.debug('ignoring close error: %s', err)

    # ---------- register access ----------

    @staticmethod
    def addrWrite(addr):
        return (addr << 1) & 0x7E

    @staticmethod
    def addrRead(addr):
        return ((addr << 1) & 0x7E) | 0x80

    def writeRegister(self, addr, val):
        self.transport.exchange(bytes([self.addrWrite(addr), val & 0xFF]))

    def readRegister(self, addr):
        rx = self.transport.exchange(bytes([self.addrRead(addr), 0x00]))
        return rx[1]

    def writeRegisterBurst(self, addr, data):
        self.transport.exchange(bytes([self.addrWrite(addr)]) + bytes(data))

    def setBitMask(self, reg, mask):
        tmp = self.readRegister(reg)
        self.writeRegister(reg, tmp | mask)

    def clearBitMask(self, reg, mask):
        tmp = self.readRegister(reg)
        self.writeRegister(reg, tmp & (~mask))

    def pollRegister(self, reg, mask, timeoutMs):
        """
        Read reg until any bit of mask is set or timeoutMs elapses.

        Returns the last value read; callers test it against mask to tell
        completion from deadline.
        """
        deadline = time.monotonic() + timeoutMs / 1000.0
        while True:
            val = self.readRegister(reg)
            if val & mask or time.monotonic() > deadline:
                return val

    # ---------- FIFO ----------

    def flushFifo(self):
        self.writeRegister(self.FIFOLevelReg, self.FIFO_FLUSH)

    def fifoLevel(self):
        return self.readRegister(self.FIFOLevelReg) & 0x7F

    def readFifoBytes(self, n):
        # One register read per byte, some RC522 clones return garbage on burst reads
        return bytes(self.readRegister(self.FIFODataReg) for _ in range(n))

    # ---------- lifecycle ----------

    def softReset(self):
        self.writeRegister(self.CommandReg, self.PCD_RESETPHASE)
        time.sleep(self.RESET_SETTLE)
        self.transport.afterReset()

    def version(self):
        return self.readRegister(self.VersionReg)

    def init(self):
        self.softReset()
        # Timer: TAuto, prescaler 0x0D3E (~0.5ms tick), reload 30 -> ~15ms
        self.writeRegister(self.TModeReg, 0x8D)
        self.writeRegister(self.TPrescalerReg, 0x3E)
        self.writeRegister(self.TReloadRegL, 30)
        self.writeRegister(self.TReloadRegH, 0)
        # 100% ASK modulation, CRC preset 0x6363
        self.writeRegister(self.TxASKReg, 0x40)
        self.writeRegister(self.ModeReg, 0x3D)
        self.antennaOn()
        lg.debug('%r initialised, VersionReg=0x%02x', self.transport, self.version())

    def antennaOn(self):
        temp = self.readRegister(self.TxControlReg)
        if (temp & self.ANTENNA_BITS) != self.ANTENNA_BITS:
            self.writeRegister(self.TxControlReg, temp | self.ANTENNA_BITS)

    def antennaOff(self):
        self.clearBitMask(self.TxControlReg, self.ANTENNA_BITS)

    def stopCrypto1(self):
        self.clearBitMask(self.Status2Reg, self.CRYPTO1_ON)

    # ---------- CRC / transceive ----------

    def calcCrc(self, data):
        """Run the chip's CRC_A coprocessor over data, returns (low, high)."""
        self.writeRegister(self.CommandReg, self.PCD_IDLE)
        self.writeRegister(self.DivIrqReg, self.IRQ_CRC)
        self.flushFifo()
        self.writeRegisterBurst(self.FIFODataReg, data)
        self.writeRegister(self.CommandReg, self.PCD_CALCCRC)

        n = self.pollRegister(self.DivIrqReg, self.IRQ_CRC, self.CRC_TIMEOUT_MS)
        if not n & self.IRQ_CRC:
            raise CrcTimeout('CRC timeout')

        crcL = self.readRegister(self.CRCResultRegL)
        crcH = self.readRegister(self.CRCResultRegM)
        return bytes([crcL, crcH])

    def transceive(self, frame, validBitsLastByte=0, timeoutMs=200):
        """
        Send frame and collect the card's answer.

        No answer (timer or deadline) is returned as an empty result with
        note set, never raised. ErrorReg faults after a completed receive
        raise TransceiveError.
        """
        frame = bytes(frame)
        self.writeRegister(self.CommandReg, self.PCD_IDLE)
        self.writeRegister(self.CommIrqReg, self.IRQ_ALL)
        self.flushFifo()
        self.writeRegisterBurst(self.FIFODataReg, frame)

        txLastBits = validBitsLastByte & 0x07
        self.writeRegister(self.BitFramingReg, txLastBits)
        self.writeRegister(self.CommandReg, self.PCD_TRANSCEIVE)
        self.writeRegister(self.BitFramingReg, txLastBits | self.START_SEND)
        lg.debug('>> %s', frame.hex(' '))

        irq = self.pollRegister(self.CommIrqReg, self.IRQ_RX | self.IRQ_TIMER, timeoutMs)
        if not irq & self.IRQ_RX:
            note = 'TimerIRq' if irq & self.IRQ_TIMER else 'Timeout'
            lg.debug('<< (%s)', note)
            return TransceiveResult(data=b'', rxLastBits=0, errorReg=self.readRegister(self.ErrorReg),
                                    irqReg=irq, note=note)

        self.writeRegister(self.BitFramingReg, 0x00)

        err = self.readRegister(self.ErrorReg)
        if err & self.ERROR_MASK:
            lg.warning('transceive failed, ErrorReg=0x%02x', err)
            raise TransceiveError(err)

        n = self.fifoLevel()
        data = self.readFifoBytes(n)
        rxLastBits = self.readRegister(self.ControlReg) & 0x07
        lg.debug('<< %s (rxLastBits=%d)', data.hex(' '), rxLastBits)
        return TransceiveResult(data=data, rxLastBits=rxLastBits, errorReg=err, irqReg=irq, fifo=n)

    def transceiveWithCrc(self, frame, timeoutMs):
        frame = bytes(frame)
        return self.transceive(frame + self.calcCrc(frame), 0, timeoutMs)

    # ---------- PICC commands ----------

    def requestA(self):
        """REQA, returns the 2-byte ATQA or None when no card answered."""
        res = self.transceive([self.PICC_REQA], 7, self.DETECT_TIMEOUT_MS)
        if len(res.data) != 2:
            return None
        return res.data

    def anticollCL1(self):
        self.writeRegister(self.CollReg, 0x80)
        res = self.transceive([self.PICC_SEL_CL1, self.PICC_ANTICOLL_CL1], 0, self.DETECT_TIMEOUT_MS)
        if len(res.data) < 5:
            return None

        uid = res.data[:4]
        if uid[0] ^ uid[1] ^ uid[2] ^ uid[3] != res.data[4]:
            lg.warning('BCC check failed for UID %s', uid.hex())
            return None
        return uid

    def selectCL1(self, uid):
        uid = bytes(uid)
        bcc = uid[0] ^ uid[1] ^ uid[2] ^ uid[3]
        frame = bytes([self.PICC_SEL_CL1, self.PICC_SELECT_CL1]) + uid[:4] + bytes([bcc])
        res = self.transceiveWithCrc(frame, self.DETECT_TIMEOUT_MS)
        if len(res.data) < 1:
            return None
        return SelectResult(sak=res.data[0], raw=res.data)

    def mifareAuthKeyA(self, blockAddr, key, uid):
        blockAddr = int(blockAddr)
        if isinstance(key, str):
            key = hex_to_bytes(key)
        key = bytes(key)
        if len(key) != 6:
            raise InvalidKeyLength('Key A must be 6 bytes, got %d' % len(key))
        # Auth uses the 4 UID bytes of the last cascade level
        authFrame = bytes([self.PICC_AUTHENT1A, blockAddr]) + key + bytes(uid)[-4:]

        self.writeRegister(self.CommandReg, self.PCD_IDLE)
        self.writeRegister(self.CommIrqReg, self.IRQ_ALL)
        self.flushFifo()
        self.writeRegisterBurst(self.FIFODataReg, authFrame)
        self.writeRegister(self.CommandReg, self.PCD_AUTHENT)

        self.pollRegister(self.CommIrqReg, self.IRQ_IDLE | self.IRQ_TIMER, self.AUTH_TIMEOUT_MS)

        err = self.readRegister(self.ErrorReg)
        if err & self.ERROR_MASK:
            lg.warning('auth failed for block %d, ErrorReg=0x%02x', blockAddr, err)
            raise AuthError(err)

        if not self.readRegister(self.Status2Reg) & self.CRYPTO1_ON:
            raise AuthFailed('Auth failed (Crypto1Off) for block %d' % blockAddr)
        return True

    def mifareReadBlock(self, blockAddr):
        res = self.transceiveWithCrc([self.PICC_READ, int(blockAddr)], self.READ_TIMEOUT_MS)
        if len(res.data) < 16:
            raise ShortRead(len(res.data))
        return res.data[:16]

    @classmethod
    def isMifareAck(cls, res):
        if res is None or len(res.data) < 1:
            return False
        return res.rxLastBits in (4, 0) and (res.data[0] & 0x0F) == cls.MIFARE_ACK

    def mifareWriteBlock(self, blockAddr, data):
        tx = WriteTransaction(self, blockAddr, data)
        tx.sendCommand()
        tx.sendPayload()
        return True

    @staticmethod
    def isTrailerBlock(block):
        return int(block) % 4 == 3


class WriteTransaction:
    """
    MIFARE WRITE as two acknowledged exchanges.

    sendPayload() refuses to run unless sendCommand() got its ACK. Once the
    payload is on the air there is no rollback; a phase 2 NAK leaves the
    block contents unknown.
    """

    AWAITING_ACK1 = 'AwaitingAck1'
    AWAITING_ACK2 = 'AwaitingAck2'
    DONE = 'Done'

    def __init__(self, reader, blockAddr, data):
        self.reader = reader
        self.blockAddr = int(blockAddr)
        self.payload = ensure_16_bytes(data)
        self.state = self.AWAITING_ACK1

    def sendCommand(self):
        if self.state != self.AWAITING_ACK1:
            raise RuntimeError('write command already sent (state %s)' % self.state)
        res = self.reader.transceiveWithCrc([MFRC522.PICC_WRITE, self.blockAddr], MFRC522.WRITE_CMD_TIMEOUT_MS)
        if not MFRC522.isMifareAck(res):
            raise WriteNotAcked(1, res.data, res.rxLastBits)
        self.state = self.AWAITING_ACK2

    def sendPayload(self):
        if self.state != self.AWAITING_ACK2:
            raise RuntimeError('write payload needs an acknowledged command (state %s)' % self.state)
        res = self.reader.transceiveWithCrc(self.payload, MFRC522.WRITE_DATA_TIMEOUT_MS)
        if not MFRC522.isMifareAck(res):
            raise WriteNotAcked(2, res.data, res.rxLastBits)
        self.state = self.DONE
