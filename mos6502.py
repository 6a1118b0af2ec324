import logging
from collections import namedtuple
from enum import Enum

logger = logging.getLogger(__name__)

# Width of the program counter. A 6502 has a 16-bit address space, but until there is a memory bus
# the interpreter only addresses the program it is handed, so this stays at one byte.
PC_WIDTH = 8

def sanitize_value(value, word_length):
    if not isinstance(value, int):
        value = int(value)
    value = value % 2**word_length
    return value

class Flag(Enum):
    """Processor status flags.

    The member values are the flag letters; where a flag lives in the status byte is decided by
    FLAG_BITS alone.
    """
    N = 'N' # negative
    V = 'V' # overflow
    B = 'B' # break
    D = 'D' # decimal mode
    I = 'I' # interrupt disable
    Z = 'Z' # zero
    C = 'C' # carry

FLAG_BITS = {
    Flag.N: 7,
    Flag.V: 6,
    # bit 5 is unused
    Flag.B: 4,
    Flag.D: 3,
    Flag.I: 2,
    Flag.Z: 1,
    Flag.C: 0,
}

FLAG_NAMES = frozenset(flag.value for flag in Flag)

class InterpretError(Exception):
    """Base class for failures that abort a run of CPU.interpret()"""

    def __init__(self, opcode=None, position=None):
        super().__init__(opcode, position)
        self.opcode = opcode
        self.position = position

class UnimplementedOpcode(InterpretError, NotImplementedError):
    def __str__(self):
        message = 'Unimplemented opcode 0x%02x' % self.opcode
        if self.position is not None:
            message += ' at position 0x%02x' % self.position
        return message

class ProgramCounterOutOfBounds(InterpretError, IndexError):
    def __str__(self):
        message = 'Program counter 0x%02x is past the end of the program' % self.position
        if self.opcode is not None:
            message += ' (reading operand of opcode 0x%02x)' % self.opcode
        return message

class Register(object):
    def __init__(self, word_length, value=0):
        self.word_length = word_length
        self._value = value

    def get(self):
        return self._value

    def set(self, value):
        self._value = sanitize_value(value, self.word_length)

class StatusRegister(Register):
    """The packed processor status byte (P).

    Every method takes either a Flag or its letter, so status.set('C') and status.set(Flag.C)
    are the same thing.

    Unlike Register.set(value), set() here takes a flag and sets one bit; use load() to replace
    the whole byte. Only get() keeps the Register meaning.
    """
    # all named bits; bit 5 is never stored
    VALID_BITS = sum(1 << bit for bit in FLAG_BITS.values())

    def __init__(self, value=0):
        super().__init__(8)
        self.load(value)

    @staticmethod
    def _mask(flag):
        if not isinstance(flag, Flag):
            flag = Flag(flag)
        return 1 << FLAG_BITS[flag]

    def set(self, flag):
        self._value |= self._mask(flag)

    def unset(self, flag):
        self._value &= ~self._mask(flag) & 0xff

    def toggle(self, flag):
        self._value ^= self._mask(flag)

    def assign(self, flag, condition):
        """Set flag if condition is truthy, otherwise clear it"""
        if condition:
            self.set(flag)
        else:
            self.unset(flag)

    def read(self, flag):
        return bool(self._value & self._mask(flag))

    def raw(self):
        return self._value

    def load(self, value):
        self._value = sanitize_value(value, self.word_length) & self.VALID_BITS

    # Register interface, so the bank can treat P like any other register
    def get(self):
        return self.raw()

class RegisterBank(object):
    # PC is added in __init__ since its width is configurable
    _regs = (('A', 8), ('X', 8))

    def __init__(self, values=None, pc_width=PC_WIDTH):
        regs = {}
        for reg, bits in self._regs + (('PC', pc_width),):
            regs[reg] = Register(bits)
        regs['P'] = StatusRegister()
        # set all regs at once, with an _ prepended
        for name, reg in regs.items():
            setattr(self, '_' + name, reg)
        if values:
            # Behavior if a value is simultaneously set for P and one of its flags is undefined
            for name, value in values.items():
                setattr(self, name, value)

    # Setting P goes through the status register's own set(), which is flag-based; route it to load()
    def _register_set(self, attr, value):
        reg = getattr(self, '_' + attr)
        if isinstance(reg, StatusRegister):
            reg.load(value)
        else:
            reg.set(value)

    # If the attribute isn't preceeded by a "_", treat it as a register (or a flag in P) but fake it
    # being a normal value
    def __getattr__(self, attr):
        if attr.startswith('_'):
            return self.__getattribute__(attr)
        if attr in FLAG_NAMES:
            return int(self._P.read(attr))
        return getattr(self, '_' + attr).get()

    def __setattr__(self, attr, value):
        if attr.startswith('_'):
            return object.__setattr__(self, attr, value)
        if attr in FLAG_NAMES:
            return self._P.assign(attr, value)
        return self._register_set(attr, value)

class Instruction(namedtuple('Instruction', ['mnemonic', 'handler', 'mode'])):
    __slots__ = ()

    @property
    def operand_length(self):
        return OPERAND_LENGTHS[self.mode]

# Number of program bytes each addressing mode consumes after the opcode
OPERAND_LENGTHS = {
    None: 0, # implied
    "A": 0, # accumulator
    "IMM": 1, # immediate
}

class CPU():
    def __init__(self, initial_registers=None, pc_width=PC_WIDTH):
        # initial_registers must be a RegisterBank or a dict of values for RegisterBank()
        self.pc_width = pc_width
        if isinstance(initial_registers, RegisterBank):
            self.reg = initial_registers
            self.pc_width = self.reg._PC.word_length
        else:
            self.reg = RegisterBank(initial_registers, pc_width=pc_width)
        self.halted = False

        # These need to be bound to self, so they're defined in the constructor
        self.ADDRESSING_MODES = {
            None: lambda program: None,
            "A": lambda program: self.reg.A, # contents of A; the handler's result is written back
            "IMM": self.next_word, # next word as literal
        }

        opcodes = {
            0x00: (self.BRK, None),
            0x09: (self.ORA, "IMM"),
            0x0a: (self.ASL, "A"),
            0x18: (self.CLC, None),
            0x29: (self.AND, "IMM"),
            0x2a: (self.ROL, "A"),
            0x38: (self.SEC, None),
            0x49: (self.EOR, "IMM"),
            0x4a: (self.LSR, "A"),
            0x58: (self.CLI, None),
            0x69: (self.ADC, "IMM"),
            0x6a: (self.ROR, "A"),
            0x78: (self.SEI, None),
            0x8a: (self.TXA, None),
            0xa2: (self.LDX, "IMM"),
            0xa9: (self.LDA, "IMM"),
            0xaa: (self.TAX, None),
            0xb8: (self.CLV, None),
            0xc9: (self.CMP, "IMM"),
            0xca: (self.DEX, None),
            0xd8: (self.CLD, None),
            0xe0: (self.CPX, "IMM"),
            0xe8: (self.INX, None),
            0xe9: (self.SBC, "IMM"),
            0xea: (self.NOP, None),
            0xf8: (self.SED, None),
        }
        # One slot per byte value; None means the opcode isn't implemented
        self.OPCODES = [None] * 0x100
        for opcode, (handler, mode) in opcodes.items():
            self.OPCODES[opcode] = Instruction(handler.__name__, handler, mode)

    @property
    def status(self):
        return self.reg._P

    @property
    def address_space(self):
        return 2**self.reg._PC.word_length

    def reset(self):
        """Return to the power-on state: every register and flag zero, PC at 0"""
        self.reg = RegisterBank(pc_width=self.pc_width)
        self.halted = False

    def lookup(self, opcode, position=None):
        instruction = self.OPCODES[opcode]
        if instruction is None:
            raise UnimplementedOpcode(opcode, position)
        return instruction

    def interpret(self, program):
        """Run program from the current PC until a BRK is executed.

        Raises UnimplementedOpcode or ProgramCounterOutOfBounds (both InterpretErrors) if the program
        can't be run to completion; the registers are then left as the last complete instruction
        left them.
        """
        program = bytes(program) # also rejects values that don't fit in a byte
        if len(program) > self.address_space:
            raise ValueError('Program of %d bytes does not fit in a %d-bit address space'
                             % (len(program), self.reg._PC.word_length))
        self.halted = False
        while not self.halted:
            self.step(program)
        logger.debug('Halted with A=0x%02x X=0x%02x P=0x%02x PC=0x%02x',
                     self.reg.A, self.reg.X, self.reg.P, self.reg.PC)

    def step(self, program):
        """Fetch, decode and execute a single instruction, and return its Instruction

        Bounds are checked against the program's logical positions, so a PC that wraps at the end
        of the address space can't carry a read or the next fetch back to the start.
        """
        start = self.reg.PC
        try:
            opcode = self.next_word(program)
            instruction = self.lookup(opcode, position=start)
            end = start + 1 + instruction.operand_length
            if end > len(program):
                raise ProgramCounterOutOfBounds(opcode, position=len(program))
        except InterpretError as e:
            # nothing but PC has been touched yet
            self.reg.PC = start
            logger.debug('Aborting: %s', e)
            raise
        value = self.ADDRESSING_MODES[instruction.mode](program)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug('%02x: %02x %s%s', start, opcode, instruction.mnemonic,
                         ' #$%02x' % value if instruction.mode == "IMM" else '')
        result = instruction.handler(value)
        if instruction.mode == "A":
            self.reg.A = result
        if not self.halted and end >= len(program):
            # the instruction itself completed; it's the following fetch that has nowhere to go
            e = ProgramCounterOutOfBounds(position=end)
            logger.debug('Aborting: %s', e)
            raise e
        return instruction

    def next_word(self, program):
        pos = self.reg.PC
        if pos >= len(program):
            raise ProgramCounterOutOfBounds(position=pos)
        self.reg.PC += 1
        return program[pos]

    # Flag policies
    def update_zero_negative(self, result):
        """Z if result is zero, N if bit 7 of result is set. No other flag is touched."""
        self.status.assign(Flag.Z, result & 0xff == 0)
        self.status.assign(Flag.N, result & 0x80)

    def update_carry(self, result):
        """C if the unsigned result carried out of bit 7"""
        self.status.assign(Flag.C, result > 0xff)

    def update_overflow(self, left, right, result):
        """V if both inputs have the same sign and the result's sign differs from it"""
        self.status.assign(Flag.V, ~(left ^ right) & (left ^ result) & 0x80)

    # Instructions
    def ADC(self, value):
        """Add value to A with carry

        Decimal mode is not emulated; D is ignored.

        Reads flags: C
        Writes flags: N, V, Z, C
        """
        result = self.reg.A + value + self.reg.C
        self.update_carry(result)
        self.update_overflow(self.reg.A, value, result)
        self.update_zero_negative(result)
        self.reg.A = result

    def AND(self, value):
        """Bitwise AND A with value

        Writes flags: N, Z
        """
        self.reg.A = self.reg.A & value
        self.update_zero_negative(self.reg.A)

    def ASL(self, value):
        """Arithmetic shift left

        Note: An Arithmetic shift normally preserves the Most Significant Bit (MSb) or "Sign bit" of the source value.
        ASL does NOT do this on the 6502.

        Writes flags: N, Z, C

        Returns the result
        """
        result = value << 1
        self.update_carry(result)
        self.update_zero_negative(result)
        return result & 0xff

    def BRK(self, *_):
        """Halt the interpreter

        There's no interrupt vector to jump through, so unlike the real thing nothing is pushed and no
        flag changes.
        """
        self.halted = True

    def CLC(self, *_):
        """Clear carry flag

        Writes flags: C
        """
        self.status.unset(Flag.C)

    def CLD(self, *_):
        """Clear decimal flag

        Writes flags: D
        """
        self.status.unset(Flag.D)

    def CLI(self, *_):
        """Clear interrupt (disable) flag

        Writes flags: I
        """
        self.status.unset(Flag.I)

    def CLV(self, *_):
        """Clear overflow flag

        Writes flags: V
        """
        self.status.unset(Flag.V)

    def _compare(self, value, target):
        """Generic implementation of CMP, CPX"""
        register = getattr(self.reg, target)
        self.status.assign(Flag.C, register >= value)
        self.update_zero_negative(register - value)

    def CMP(self, value):
        """Compare A with value

        Usually followed by a conditional branch

        Writes flags: N, C, Z
        """
        self._compare(value, 'A')

    def CPX(self, value):
        """Compare X with value

        Writes flags: N, C, Z
        """
        self._compare(value, 'X')

    def _dec_or_inc_register(self, target, increment=True):
        """Generic implementation of DEX, INX"""
        result = (getattr(self.reg, target) + (1 if increment else -1)) & 0xff
        setattr(self.reg, target, result)
        self.update_zero_negative(result)

    def DEX(self, *_):
        """Decrement X by one

        Writes flags: Z, N
        """
        self._dec_or_inc_register('X', increment=False)

    def EOR(self, value):
        """Bitwise eXclusive OR between A and value -- sets A

        Writes flags: N, Z
        """
        self.reg.A = self.reg.A ^ value
        self.update_zero_negative(self.reg.A)

    def INX(self, *_):
        """Increment X by one, wrapping from 0xff to 0x00

        Writes flags: Z, N
        """
        self._dec_or_inc_register('X', increment=True)

    def _load(self, target, value):
        """Generic impl of LDA, LDX"""
        setattr(self.reg, target, value)
        self.update_zero_negative(value)

    def LDA(self, value):
        """Load A with value

        Writes flags: N, Z
        """
        self._load('A', value)

    def LDX(self, value):
        """Load X with value

        Writes flags: N, Z
        """
        self._load('X', value)

    def LSR(self, value):
        """Logical shift right

        Writes flags: N, C, Z
        """
        self.status.assign(Flag.C, value & 0b1)
        result = value >> 1
        self.update_zero_negative(result)
        return result

    def NOP(self, *_):
        """Do nothing"""
        pass

    def ORA(self, value):
        """Bitwise OR between A and value -- sets A

        Writes flags: N, Z
        """
        self.reg.A = self.reg.A | value
        self.update_zero_negative(self.reg.A)

    def ROL(self, value):
        """Rotate bits left, with carry.

        Writes flags: C, Z, N
        """
        result = (value << 1) | self.reg.C
        self.update_carry(result)
        self.update_zero_negative(result)
        return result & 0xff

    def ROR(self, value):
        """Rotate bits right, with carry.

        Writes flags: C, Z, N
        """
        result = (value >> 1) | (0b10000000 if self.reg.C else 0)
        self.status.assign(Flag.C, value & 0b1)
        self.update_zero_negative(result)
        return result

    def SBC(self, value):
        """Subtract value from A with borrow.

        The result depends on the C flag, so when performing single precision math,
        or just before the first operation of multi precision math, the C flag must
        be set with SEC before this operation.

        Subtraction is addition of the value's ones' complement, so C ends up set when no borrow was
        needed. Decimal mode is not emulated.

        Reads flags: C
        Writes flags: V, C, N, Z
        """
        self.ADC(value ^ 0xff)

    def SEC(self, *_):
        """Set carry flag.

        Writes flag: C
        """
        self.status.set(Flag.C)

    def SED(self, *_):
        """Set decimal flag.

        Writes flag: D
        """
        self.status.set(Flag.D)

    def SEI(self, *_):
        """Set interrupt (disable) flag.

        Writes flag: I
        """
        self.status.set(Flag.I)

    def _transfer(self, source, target):
        """Generic impl of TAX, TXA"""
        value = getattr(self.reg, source)
        setattr(self.reg, target, value)
        self.update_zero_negative(value)

    def TAX(self, *_):
        """Transfer A to X"""
        self._transfer('A', 'X')

    def TXA(self, *_):
        """Transfer X to A"""
        self._transfer('X', 'A')
