import enum
import logging
import random
from collections import namedtuple

logger = logging.getLogger(__name__)

MEMORY_SIZE = 4096
ADDRESS_MASK = MEMORY_SIZE - 1
PROGRAM_START = 0x200
MAX_PROGRAM_SIZE = MEMORY_SIZE - PROGRAM_START
REGISTER_COUNT = 16
STACK_SIZE = 16
DISPLAY_WIDTH = 64
DISPLAY_HEIGHT = 32
KEY_COUNT = 16
FONT_GLYPH_SIZE = 5

FONTSET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])


class Chip8Error(Exception):
    """Base class for interpreter errors."""


class ProgramLoadError(Chip8Error):
    """The ROM could not be read or does not fit in memory."""


class StackOverflowError(Chip8Error):
    pass


class StackUnderflowError(Chip8Error):
    pass


class MachineStateError(Chip8Error):
    """The host asked the machine to do something its state forbids."""


class MachineState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    HALTED = "halted"


Instruction = namedtuple("Instruction", ["opcode", "kind", "x", "y", "n", "nn", "nnn"])


def decode(opcode):
    """Split a 16-bit opcode into its fixed CHIP-8 fields."""
    return Instruction(
        opcode=opcode,
        kind=(opcode & 0xF000) >> 12,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        nn=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


class Chip8:
    """A CHIP-8 machine: memory, registers, stack, display, keypad and timers.

    The machine starts HALTED and becomes RUNNING after a successful
    ``load_program``. The host drives it with ``run_batch`` (or ``step``),
    feeds the keypad with ``set_key`` and calls ``tick_timers`` at 60 Hz.

    Register VF (``V[0xF]``) is a general purpose register *and* the
    carry/borrow/collision flag. Any opcode that defines a flag overwrites
    VF after writing its result, so a program that keeps data in VF loses it
    on the next arithmetic, shift or draw.
    """

    def __init__(self, seed=None):
        self.memory = bytearray(MEMORY_SIZE)
        self.memory[0:len(FONTSET)] = FONTSET
        self.V = [0] * REGISTER_COUNT
        self.I = 0
        self.pc = PROGRAM_START
        self.stack = []
        self.delay_timer = 0
        self.sound_timer = 0
        self.sound_active = False
        self.display_raw = [[0] * DISPLAY_WIDTH for _ in range(DISPLAY_HEIGHT)]
        self.draw_flag = True
        self.keys = [0] * KEY_COUNT
        self.wait_register = None
        self.awaited_key = None
        self.state = MachineState.HALTED
        self.halt_reason = None
        self.rng = random.Random(seed)
        self._load_attempted = False

        self._handlers = {
            0x0: self._op_system,
            0x1: self._op_jump,
            0x2: self._op_call,
            0x3: self._op_skip_eq_imm,
            0x4: self._op_skip_ne_imm,
            0x5: self._op_skip_eq_reg,
            0x6: self._op_load_imm,
            0x7: self._op_add_imm,
            0x8: self._op_alu,
            0x9: self._op_skip_ne_reg,
            0xA: self._op_load_index,
            0xB: self._op_jump_offset,
            0xC: self._op_random,
            0xD: self._op_draw,
            0xE: self._op_key_skip,
            0xF: self._op_misc,
        }
        self._alu = {
            0x0: self._alu_load,
            0x1: self._alu_or,
            0x2: self._alu_and,
            0x3: self._alu_xor,
            0x4: self._alu_add,
            0x5: self._alu_sub,
            0x6: self._alu_shr,
            0x7: self._alu_subn,
            0xE: self._alu_shl,
        }
        self._misc = {
            0x07: self._misc_get_delay,
            0x0A: self._misc_wait_key,
            0x15: self._misc_set_delay,
            0x18: self._misc_set_sound,
            0x1E: self._misc_add_index,
            0x29: self._misc_font,
            0x33: self._misc_bcd,
            0x55: self._misc_store,
            0x65: self._misc_load,
        }

    # Loading

    def load_from_file(self, filename):
        if self._load_attempted:
            raise ProgramLoadError("A program has already been loaded into this machine.")
        try:
            with open(filename, 'rb') as f:
                program_bytes = f.read()
        except OSError as e:
            self._load_attempted = True
            raise ProgramLoadError(f"Cannot read program {filename}: {e}") from e
        self.load_program(program_bytes)

    def load_program(self, program_bytes):
        if self._load_attempted:
            raise ProgramLoadError("A program has already been loaded into this machine.")
        self._load_attempted = True
        if len(program_bytes) > MAX_PROGRAM_SIZE:
            raise ProgramLoadError(
                f"Program size {len(program_bytes)} exceeds memory limits ({MAX_PROGRAM_SIZE} bytes).")
        self.memory[PROGRAM_START:PROGRAM_START + len(program_bytes)] = program_bytes
        self.pc = PROGRAM_START
        self.stack.clear()
        self.keys = [0] * KEY_COUNT
        self.wait_register = None
        self.awaited_key = None
        self.state = MachineState.RUNNING
        logger.info("Loaded %d byte program at 0x%03X", len(program_bytes), PROGRAM_START)

    # Host controls

    @property
    def running(self):
        return self.state is MachineState.RUNNING

    def pause(self):
        if self.state is MachineState.RUNNING:
            self.state = MachineState.PAUSED
            logger.info("Paused at PC=0x%03X", self.pc)

    def resume(self):
        if self.state is MachineState.PAUSED:
            self.state = MachineState.RUNNING
            logger.info("Resumed")

    def toggle_pause(self):
        if self.state is MachineState.RUNNING:
            self.pause()
        else:
            self.resume()

    def halt(self, reason=None):
        self.state = MachineState.HALTED
        self.halt_reason = reason

    def set_key(self, key, pressed):
        if not 0 <= key < KEY_COUNT:
            raise ValueError(f"Key {key} is outside the keypad (0-{KEY_COUNT - 1}).")
        self.keys[key] = 1 if pressed else 0

    def pixel(self, x, y):
        if not (0 <= x < DISPLAY_WIDTH and 0 <= y < DISPLAY_HEIGHT):
            raise ValueError(f"Pixel ({x}, {y}) is off screen.")
        return self.display_raw[y][x] == 1

    # Fetch / decode / execute

    def fetch(self):
        """Read the opcode at PC and advance PC past it."""
        high_byte = self.memory[self.pc & ADDRESS_MASK]
        low_byte = self.memory[(self.pc + 1) & ADDRESS_MASK]
        self.pc = (self.pc + 2) & ADDRESS_MASK
        return (high_byte << 8) | low_byte

    def execute(self, instruction):
        self._handlers[instruction.kind](instruction)

    def step(self):
        """Run one instruction cycle.

        Stack overflow/underflow halts the machine; the exception is kept in
        ``halt_reason`` instead of being raised.
        """
        if self.state is not MachineState.RUNNING:
            raise MachineStateError(f"Cannot step a {self.state.value} machine.")
        address = self.pc
        instruction = decode(self.fetch())
        logger.debug("%03X: %04X", address, instruction.opcode)
        try:
            self.execute(instruction)
        except (StackOverflowError, StackUnderflowError) as e:
            logger.error("Halting at 0x%03X: %s", address, e)
            self.halt(e)

    def run_batch(self, count):
        executed = 0
        while executed < count and self.state is MachineState.RUNNING:
            self.step()
            executed += 1
        return executed

    def tick_timers(self):
        """60 Hz tick. Returns True while the buzzer should sound."""
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1
            self.sound_active = True
        else:
            self.sound_active = False
        return self.sound_active

    def _unknown(self, instruction):
        logger.warning("Unknown opcode %04X at 0x%03X", instruction.opcode, (self.pc - 2) & ADDRESS_MASK)

    def _skip(self):
        self.pc = (self.pc + 2) & ADDRESS_MASK

    # Opcode handlers

    def _op_system(self, ins):
        if ins.opcode == 0x00E0:
            "00E0 - CLS: Clear the display."
            self.display_raw = [[0] * DISPLAY_WIDTH for _ in range(DISPLAY_HEIGHT)]
            self.draw_flag = True
        elif ins.opcode == 0x00EE:
            "00EE - RET: Return from a subroutine."
            if not self.stack:
                raise StackUnderflowError("Stack underflow on RET.")
            self.pc = self.stack.pop()
        else:
            # 0NNN calls into RCA 1802 machine code, which we cannot run.
            self._unknown(ins)

    def _op_jump(self, ins):
        "1NNN - JP addr: Jump to location NNN."
        self.pc = ins.nnn

    def _op_call(self, ins):
        "2NNN - CALL addr: Call subroutine at NNN."
        if len(self.stack) >= STACK_SIZE:
            raise StackOverflowError("Stack overflow on CALL.")
        self.stack.append(self.pc)
        self.pc = ins.nnn

    def _op_skip_eq_imm(self, ins):
        "3XNN - Skips the next instruction if VX equals NN."
        if self.V[ins.x] == ins.nn:
            self._skip()

    def _op_skip_ne_imm(self, ins):
        "4XNN - Skips the next instruction if VX doesn't equal NN."
        if self.V[ins.x] != ins.nn:
            self._skip()

    def _op_skip_eq_reg(self, ins):
        "5XY0 - Skips the next instruction if VX equals VY."
        if ins.n != 0:
            self._unknown(ins)
        elif self.V[ins.x] == self.V[ins.y]:
            self._skip()

    def _op_load_imm(self, ins):
        "6XNN - Sets VX to NN."
        self.V[ins.x] = ins.nn

    def _op_add_imm(self, ins):
        "7XNN - Adds NN to VX. (Carry flag is not changed)"
        self.V[ins.x] = (self.V[ins.x] + ins.nn) & 0xFF

    def _op_alu(self, ins):
        handler = self._alu.get(ins.n)
        if handler is None:
            self._unknown(ins)
        else:
            handler(ins.x, ins.y)

    def _alu_load(self, x, y):
        self.V[x] = self.V[y]

    def _alu_or(self, x, y):
        self.V[x] |= self.V[y]

    def _alu_and(self, x, y):
        self.V[x] &= self.V[y]

    def _alu_xor(self, x, y):
        self.V[x] ^= self.V[y]

    def _alu_add(self, x, y):
        "8XY4 - VX += VY, VF = carry."
        total = self.V[x] + self.V[y]
        self.V[x] = total & 0xFF
        self.V[0xF] = 1 if total > 0xFF else 0

    def _alu_sub(self, x, y):
        "8XY5 - VX -= VY, VF = 1 when there is no borrow."
        no_borrow = 1 if self.V[x] >= self.V[y] else 0
        self.V[x] = (self.V[x] - self.V[y]) & 0xFF
        self.V[0xF] = no_borrow

    def _alu_shr(self, x, y):
        "8XY6 - VX = VY >> 1, VF = bit shifted out."
        source = self.V[y]
        self.V[x] = source >> 1
        self.V[0xF] = source & 0x1

    def _alu_subn(self, x, y):
        "8XY7 - VX = VY - VX, VF = 1 when there is no borrow."
        no_borrow = 1 if self.V[y] >= self.V[x] else 0
        self.V[x] = (self.V[y] - self.V[x]) & 0xFF
        self.V[0xF] = no_borrow

    def _alu_shl(self, x, y):
        "8XYE - VX = VY << 1, VF = bit shifted out."
        source = self.V[y]
        self.V[x] = (source << 1) & 0xFF
        self.V[0xF] = (source & 0b10000000) >> 7

    def _op_skip_ne_reg(self, ins):
        "9XY0 - Skips the next instruction if VX doesn't equal VY."
        if ins.n != 0:
            self._unknown(ins)
        elif self.V[ins.x] != self.V[ins.y]:
            self._skip()

    def _op_load_index(self, ins):
        "ANNN - Sets I to the address NNN."
        self.I = ins.nnn

    def _op_jump_offset(self, ins):
        "BNNN - Jumps to the address NNN plus V0."
        self.pc = (ins.nnn + self.V[0]) & ADDRESS_MASK

    def _op_random(self, ins):
        "CXNN - Sets VX to a random byte AND NN."
        self.V[ins.x] = self.rng.randint(0, 255) & ins.nn

    def _op_draw(self, ins):
        """DXYN - Draw an 8xN sprite from memory[I] at (VX, VY).

        The anchor wraps onto the screen; the sprite itself is clipped at the
        right and bottom edges. VF ends up 1 if any lit pixel was turned off.
        """
        x0 = self.V[ins.x] % DISPLAY_WIDTH
        y0 = self.V[ins.y] % DISPLAY_HEIGHT
        self.V[0xF] = 0
        for row in range(ins.n):
            screen_y = y0 + row
            if screen_y >= DISPLAY_HEIGHT:
                break
            sprite_byte = self.memory[(self.I + row) & ADDRESS_MASK]
            line = self.display_raw[screen_y]
            for col in range(8):
                screen_x = x0 + col
                if screen_x >= DISPLAY_WIDTH:
                    break
                if (sprite_byte >> (7 - col)) & 0x1:
                    if line[screen_x] == 1:
                        self.V[0xF] = 1
                    line[screen_x] ^= 1
        self.draw_flag = True

    def _op_key_skip(self, ins):
        key = self.V[ins.x] & 0xF
        if ins.nn == 0x9E:
            "EX9E - Skips the next instruction if the key stored in VX is pressed."
            if self.keys[key]:
                self._skip()
        elif ins.nn == 0xA1:
            "EXA1 - Skips the next instruction if the key stored in VX isn't pressed."
            if not self.keys[key]:
                self._skip()
        else:
            self._unknown(ins)

    def _op_misc(self, ins):
        handler = self._misc.get(ins.nn)
        if handler is None:
            self._unknown(ins)
        else:
            handler(ins.x)

    def _misc_get_delay(self, x):
        self.V[x] = self.delay_timer

    def _misc_wait_key(self, x):
        """FX0A - Wait for a key to be pressed and released, then store it in VX.

        The instruction re-executes itself until then; the key being held is
        remembered in ``awaited_key`` between steps.
        """
        self.wait_register = x
        if self.awaited_key is None:
            for key, pressed in enumerate(self.keys):
                if pressed:
                    self.awaited_key = key
                    break
        elif not self.keys[self.awaited_key]:
            self.V[x] = self.awaited_key
            self.awaited_key = None
            self.wait_register = None
            return
        self.pc = (self.pc - 2) & ADDRESS_MASK

    def _misc_set_delay(self, x):
        self.delay_timer = self.V[x]

    def _misc_set_sound(self, x):
        self.sound_timer = self.V[x]

    def _misc_add_index(self, x):
        "FX1E - Adds VX to I. VF is not affected."
        self.I = (self.I + self.V[x]) & 0xFFFF

    def _misc_font(self, x):
        "FX29 - Sets I to the font glyph for the hex digit in VX."
        self.I = self.V[x] * FONT_GLYPH_SIZE

    def _misc_bcd(self, x):
        "FX33 - Stores the decimal digits of VX at I, I+1, I+2."
        value = self.V[x]
        self.memory[self.I & ADDRESS_MASK] = value // 100
        self.memory[(self.I + 1) & ADDRESS_MASK] = (value // 10) % 10
        self.memory[(self.I + 2) & ADDRESS_MASK] = value % 10

    def _misc_store(self, x):
        "FX55 - Stores V0 to VX in memory starting at I; I advances past them."
        for i in range(x + 1):
            self.memory[(self.I + i) & ADDRESS_MASK] = self.V[i]
        self.I = (self.I + x + 1) & 0xFFFF

    def _misc_load(self, x):
        "FX65 - Fills V0 to VX from memory starting at I; I advances past them."
        for i in range(x + 1):
            self.V[i] = self.memory[(self.I + i) & ADDRESS_MASK]
        self.I = (self.I + x + 1) & 0xFFFF
