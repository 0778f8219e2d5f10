import pytest

import MFRC522

R = MFRC522.MFRC522

UID = bytes([0xDE, 0xAD, 0xBE, 0xEF])
ATQA = bytes([0x04, 0x00])
DEFAULT_KEY = bytes([0xFF] * 6)


def crc_a(data):
    """ISO14443A CRC computed on the host, what the chip coprocessor returns."""
    wCrc = 0x6363
    for bt in data:
        bt = (bt ^ (wCrc & 0xff))
        bt = (bt ^ (bt << 4)) & 0xff
        wCrc = (wCrc >> 8) ^ (bt << 8) ^ (bt << 3) ^ (bt >> 4)
    return bytes([wCrc & 0xff, (wCrc >> 8) & 0xff])


def bcc(uid):
    return uid[0] ^ uid[1] ^ uid[2] ^ uid[3]


class FakeCard:
    """MIFARE Classic 1K answering the commands the driver sends."""

    def __init__(self, uid=UID, sak=0x08, atqa=ATQA, key=DEFAULT_KEY):
        self.uid = bytes(uid)
        self.sak = sak
        self.atqa = bytes(atqa)
        self.key = bytes(key)
        self.blocks = {n: bytes(16) for n in range(64)}
        self.authSector = None
        self.pendingWrite = None
        # anticollision answer override (5 bytes), None for uid + bcc
        self.anticollAnswer = None
        self.answerSelect = True
        self.nakPhase = None
        self.ackBits = 4
        self.frames = []

    def authenticate(self, block, key, uid):
        ok = uid == self.uid and key == self.key
        self.authSector = block // 4 if ok else None
        return ok

    def _crcOk(self, frame):
        return len(frame) > 2 and crc_a(frame[:-2]) == frame[-2:]

    def _ack(self):
        return bytes([0x0A]), self.ackBits

    def respond(self, frame, bits):
        self.frames.append((frame, bits))
        if bits == 7 and frame == bytes([0x26]):
            return self.atqa, 0
        if frame == bytes([0x93, 0x20]):
            if self.anticollAnswer is not None:
                return self.anticollAnswer, 0
            return self.uid + bytes([bcc(self.uid)]), 0
        if len(frame) == 9 and frame[:2] == bytes([0x93, 0x70]) and self._crcOk(frame):
            if not self.answerSelect or frame[2:6] != self.uid:
                return None
            return bytes([self.sak]) + crc_a([self.sak]), 0
        if len(frame) == 4 and frame[0] == 0x30 and self._crcOk(frame):
            if self.authSector != frame[1] // 4:
                return None
            data = self.blocks[frame[1]]
            return data + crc_a(data), 0
        if len(frame) == 4 and frame[0] == 0xA0 and self._crcOk(frame):
            if self.authSector != frame[1] // 4 or self.nakPhase == 1:
                return bytes([0x04]), 4
            self.pendingWrite = frame[1]
            return self._ack()
        if len(frame) == 18 and self.pendingWrite is not None and self._crcOk(frame):
            block = self.pendingWrite
            self.pendingWrite = None
            if self.nakPhase == 2:
                return bytes([0x01]), 4
            self.blocks[block] = frame[:16]
            return self._ack()
        return None


class FakeRc522:
    """
    Register-level RC522 behind the transport contract.

    Decodes SPI address bytes, keeps the FIFO, IRQ, CRC and Status2
    registers, and hands transmitted frames to a FakeCard.
    """

    def __init__(self, card=None):
        self.card = card
        self.regs = [0] * 64
        self.fifo = bytearray()
        self.exchanges = []
        self.opened = False
        self.closes = 0
        self.resets = 0
        self.afterResets = 0
        self.crcStuck = False
        self.timerIrq = False
        self.rxError = 0
        self.authError = 0
        self.authIrq = True
        self._powerOn()

    def _powerOn(self):
        self.regs = [0] * 64
        self.regs[R.TxControlReg] = 0x80
        self.regs[R.VersionReg] = 0x92
        self.fifo.clear()

    def open(self):
        self.opened = True

    def close(self):
        self.opened = False
        self.closes += 1

    def afterReset(self):
        self.afterResets += 1

    def exchange(self, txBuf):
        txBuf = bytes(txBuf)
        self.exchanges.append(txBuf)
        reg = (txBuf[0] >> 1) & 0x3F
        if txBuf[0] & 0x80:
            return bytes([0]) + bytes(self.read(reg) for _ in txBuf[1:])
        for val in txBuf[1:]:
            self.write(reg, val)
        return bytes(len(txBuf))

    def writesTo(self, reg):
        return [tx[1:] for tx in self.exchanges if tx[0] == R.addrWrite(reg)]

    def readsOf(self, reg):
        return [tx for tx in self.exchanges if tx[0] == R.addrRead(reg)]

    def read(self, reg):
        if reg == R.FIFODataReg:
            return self.fifo.pop(0) if self.fifo else 0
        if reg == R.FIFOLevelReg:
            return len(self.fifo)
        return self.regs[reg]

    def write(self, reg, val):
        if reg == R.FIFODataReg:
            self.fifo.append(val)
        elif reg == R.FIFOLevelReg:
            if val & 0x80:
                self.fifo.clear()
        elif reg in (R.CommIrqReg, R.DivIrqReg):
            if val & 0x80:
                self.regs[reg] |= val & 0x7F
            else:
                self.regs[reg] &= ~val & 0x7F
        elif reg == R.CommandReg:
            self.regs[reg] = val
            self._command(val & 0x0F)
        elif reg == R.BitFramingReg:
            self.regs[reg] = val
            if val & 0x80 and self.regs[R.CommandReg] & 0x0F == R.PCD_TRANSCEIVE:
                self._transmit(val & 0x07)
        else:
            self.regs[reg] = val

    def _command(self, cmd):
        if cmd == R.PCD_RESETPHASE:
            self.resets += 1
            self._powerOn()
        elif cmd == R.PCD_CALCCRC:
            if not self.crcStuck:
                crc = crc_a(self.fifo)
                self.regs[R.CRCResultRegL] = crc[0]
                self.regs[R.CRCResultRegM] = crc[1]
                self.regs[R.DivIrqReg] |= R.IRQ_CRC
        elif cmd == R.PCD_AUTHENT:
            frame = bytes(self.fifo)
            self.fifo.clear()
            ok = (self.card is not None and len(frame) == 12 and frame[0] == R.PICC_AUTHENT1A
                  and self.card.authenticate(frame[1], frame[2:8], frame[8:12]))
            self.regs[R.ErrorReg] = self.authError
            if ok and not self.authError:
                self.regs[R.Status2Reg] |= R.CRYPTO1_ON
            else:
                self.regs[R.Status2Reg] &= ~R.CRYPTO1_ON & 0xFF
            if self.authIrq:
                self.regs[R.CommIrqReg] |= R.IRQ_IDLE

    def _transmit(self, bits):
        frame = bytes(self.fifo)
        self.fifo.clear()
        answer = self.card.respond(frame, bits) if self.card is not None else None
        if answer is None:
            if self.timerIrq:
                self.regs[R.CommIrqReg] |= R.IRQ_TIMER
            return
        data, lastBits = answer
        self.fifo.extend(data)
        self.regs[R.ControlReg] = (self.regs[R.ControlReg] & ~0x07) | lastBits
        self.regs[R.ErrorReg] = self.rxError
        self.regs[R.CommIrqReg] |= R.IRQ_RX | R.IRQ_IDLE


@pytest.fixture
def card():
    return FakeCard()


@pytest.fixture
def chip(card):
    return FakeRc522(card)


@pytest.fixture
def reader(chip):
    mf_reader = MFRC522.MFRC522(transport=chip)
    mf_reader.open()
    mf_reader.init()
    chip.exchanges.clear()
    return mf_reader
