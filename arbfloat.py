#
# Decoding of binary floating-point storage words to arbitrary-precision values
#
# (c) Neil Booth 2007-2021.  All rights reserved.
#

import argparse
import logging
import sys
import threading
from collections import namedtuple
from contextlib import contextmanager
from enum import IntEnum
from fractions import Fraction

import attr


__all__ = ('FloatFormat', 'FormatError', 'Kind', 'ArbFloat', 'FieldTuple',
           'Context', 'DefaultContext', 'get_context', 'set_context', 'local_context',
           'extract_fields', 'classify', 'parse', 'parse_bytes',
           'STORAGE_BITS', 'Binary16', 'BFloat16', 'Binary32', 'Binary64')


logger = logging.getLogger(__name__)

# Storage words are unsigned integers of this many bits.  Every format must fit.
STORAGE_BITS = 64

# Precisions of the IEEE-754 interchange formats that fit a storage word, by width
IEEE_precisions = {16: 11, 32: 24, 64: 53}


class FormatError(ValueError):
    '''Raised when a FloatFormat is constructed with field widths that cannot describe a
    floating point layout within a storage word.'''


# The four variants of an ArbFloat.
class Kind(IntEnum):
    REGULAR = 0
    ZERO = 1
    INFINITY = 2
    NAN = 3


FieldTuple = namedtuple('FieldTuple', 'sign biased_exponent fraction')


def _check_width(instance, attribute, value):
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f'{attribute.name} must be an integer')


@attr.s(slots=True, frozen=True)
class FloatFormat:
    '''A binary floating point interchange layout, described by the widths of its fraction
    and biased exponent fields.  The sign is the single bit above the exponent field:

          sign | biased exponent | fraction
          1      exponent_bits     fraction_bits

    fraction_bits may be zero, in which case only the exponent field distinguishes zeroes,
    regular numbers, infinities and NaNs.  exponent_bits must be at least 1, and the whole
    layout must fit in a storage word of STORAGE_BITS bits.  Everything else is derived.
    '''

    fraction_bits = attr.ib(validator=_check_width)
    exponent_bits = attr.ib(validator=_check_width)

    def __attrs_post_init__(self):
        if self.fraction_bits < 0:
            raise FormatError(f'fraction_bits cannot be negative: {self.fraction_bits}')
        if self.exponent_bits < 1:
            raise FormatError(f'exponent_bits must be at least 1: {self.exponent_bits}')
        if self.width > STORAGE_BITS:
            raise FormatError(f'format width {self.width} exceeds the {STORAGE_BITS}-bit '
                              f'storage word')
        logger.debug('created %r', self)

    @classmethod
    def from_pair(cls, precision, exponent_bits):
        '''Construct from the specified precision (including the implicit integer bit) and
        exponent width.'''
        if not isinstance(precision, int):
            raise TypeError('precision must be an integer')
        return cls(precision - 1, exponent_bits)

    @classmethod
    def from_IEEE(cls, width):
        '''The IEEE-754 interchange format of the given width.'''
        precision = IEEE_precisions.get(width)
        if precision is None:
            raise FormatError(f'no IEEE-754 interchange format of width {width} fits '
                              f'a {STORAGE_BITS}-bit storage word')
        return cls.from_pair(precision, width - precision)

    @property
    def precision(self):
        '''The number of significand bits including the implicit integer bit.'''
        return self.fraction_bits + 1

    @property
    def exponent_bias(self):
        return (1 << (self.exponent_bits - 1)) - 1

    @property
    def width(self):
        '''The number of bits in an encoding, including the sign bit.'''
        return 1 + self.exponent_bits + self.fraction_bits

    @property
    def byte_width(self):
        return (self.width + 7) // 8

    @property
    def fraction_shift(self):
        return 0

    @property
    def fraction_mask(self):
        return (1 << self.fraction_bits) - 1

    @property
    def exponent_shift(self):
        return self.fraction_shift + self.fraction_bits

    @property
    def exponent_mask(self):
        '''The mask of the biased exponent field once shifted down; also the all-ones exponent
        of infinities and NaNs.'''
        return (1 << self.exponent_bits) - 1

    @property
    def sign_shift(self):
        return self.exponent_shift + self.exponent_bits

    @property
    def sign_mask(self):
        return 1

    @property
    def integer_bit(self):
        '''The implicit integer bit of normal numbers, as it would sit above the fraction.'''
        return 1 << self.fraction_bits


class ArbFloat(namedtuple('ArbFloat', 'kind significand exponent')):
    '''An arbitrary-precision floating point value.

    The kind tags the value as one of the four variants.  The significand is a nonzero
    integer whose sign is the sign of the value, for every kind:

        REGULAR    value = significand * 2^exponent
        ZERO       significand is +1 or -1; the value is a signed zero
        INFINITY   significand is +1 or -1
        NAN        significand is +1 or -1; the sign has no numeric meaning

    Only regular values have an exponent; it is None otherwise.

    Regular values are normalized on construction by shifting the trailing zero bits of
    the significand into the exponent, so the significand's magnitude is always odd.  Each
    real number then has exactly one representation, and equality of two ArbFloats is
    equality of the numbers they represent.
    '''

    def __new__(cls, kind, significand, exponent=None):
        '''Validate, normalize and create a value of the given kind.'''
        if not isinstance(kind, Kind):
            raise TypeError('kind must be a Kind')
        if not isinstance(significand, int) or isinstance(significand, bool):
            raise TypeError('significand must be an integer')
        if significand == 0:
            raise ValueError('significand cannot be zero')
        if kind == Kind.REGULAR:
            if not isinstance(exponent, int) or isinstance(exponent, bool):
                raise TypeError('a regular value requires an integer exponent')
            adjustment = trailing_zeros(significand)
            significand >>= adjustment
            exponent += adjustment
        else:
            if exponent is not None:
                raise ValueError(f'{kind.name} values have no exponent')
            if abs(significand) != 1:
                raise ValueError(f'{kind.name} significand must be +1 or -1, '
                                 f'not {significand:,d}')
        return super().__new__(cls, kind, significand, exponent)

    @classmethod
    def _make(cls, iterable):
        '''Make a value from a sequence, validating and normalizing it as the constructor
        does.'''
        return cls(*iterable)

    def _replace(self, **kwargs):
        '''Return a new value with the given fields replaced, validated and normalized as the
        constructor does.'''
        fields = self._asdict()
        fields.update(kwargs)
        return self.__class__(**fields)

    # Equal only to other ArbFloats, and unordered
    def __eq__(self, other):
        return isinstance(other, ArbFloat) and tuple.__eq__(self, other)

    def __ne__(self, other):
        return not self == other

    __hash__ = tuple.__hash__

    def _unordered(self, other):
        raise TypeError('ArbFloat values are not ordered')

    __lt__ = __le__ = __gt__ = __ge__ = _unordered

    ##
    ## Non-computational operations
    ##

    def is_regular(self):
        '''Return True if the value is finite and non-zero.'''
        return self.kind == Kind.REGULAR

    def is_zero(self):
        '''Return True if the value is zero regardless of sign.'''
        return self.kind == Kind.ZERO

    def is_infinite(self):
        return self.kind == Kind.INFINITY

    def is_nan(self):
        return self.kind == Kind.NAN

    def is_finite(self):
        '''Return True for regular numbers and zeroes.'''
        return self.kind in (Kind.REGULAR, Kind.ZERO)

    def is_negative(self):
        '''Return True if the sign is negative.  This is reported for NaNs too.'''
        return self.significand < 0

    def number_class(self):
        '''Return a string describing the class of the number.'''
        if self.kind == Kind.NAN:
            return 'NaN'
        sign = '-' if self.significand < 0 else '+'
        if self.kind == Kind.REGULAR:
            return sign + 'Regular'
        if self.kind == Kind.ZERO:
            return sign + 'Zero'
        return sign + 'Infinity'

    def as_integer_ratio(self):
        '''Return a pair (n, d) of integers that represent the value as a fraction in lowest
        terms and with a positive denominator.'''
        if self.kind == Kind.NAN:
            raise ValueError('cannot convert a NaN to an integer ratio')
        if self.kind == Kind.INFINITY:
            raise OverflowError('cannot convert an infinity to an integer ratio')
        if self.kind == Kind.ZERO:
            return (0, 1)
        # The significand is odd so this is already in lowest terms
        if self.exponent >= 0:
            return self.significand << self.exponent, 1
        return self.significand, 1 << -self.exponent

    def to_fraction(self):
        '''Return the value as a Fraction.'''
        return Fraction(*self.as_integer_ratio())

    def __repr__(self):
        if self.kind == Kind.REGULAR:
            return (f'ArbFloat(kind={self.kind.name}, exponent={self.exponent}, '
                    f'significand={self.significand})')
        return f'ArbFloat(kind={self.kind.name}, significand={self.significand})'


def _check_endianness(instance, attribute, value):
    if value not in ('big', 'little'):
        raise ValueError(f"endianness must be 'big' or 'little', not {value!r}")


@attr.s(slots=True, kw_only=True)
class Context:
    '''Defaults for operations that do not take them explicitly.'''

    # Byte order assumed by parse_bytes when none is given
    endianness = attr.ib(default=sys.byteorder, validator=_check_endianness)
    # Format used by the command line when none is given
    default_format = attr.ib(default=attr.Factory(lambda: Binary32),
                             validator=attr.validators.instance_of(FloatFormat))

    def copy(self):
        '''Return a copy of the context.'''
        return attr.evolve(self)


#
# Decoding
#

def extract_fields(fmt, raw):
    '''Return the FieldTuple (sign, biased_exponent, fraction) of a storage word.

    The fields are positional so any storage word can be decoded.  Bits above the sign bit
    are ignored.
    '''
    if not isinstance(raw, int):
        raise TypeError('storage word must be an integer')
    if not 0 <= raw < 1 << STORAGE_BITS:
        raise ValueError(f'storage word {raw:#x} out of range')
    fraction = (raw >> fmt.fraction_shift) & fmt.fraction_mask
    biased_exponent = (raw >> fmt.exponent_shift) & fmt.exponent_mask
    sign = bool((raw >> fmt.sign_shift) & fmt.sign_mask)
    return FieldTuple(sign, biased_exponent, fraction)


def classify(fmt, biased_exponent, fraction):
    '''Return the Kind encoded by a biased exponent and fraction.'''
    if biased_exponent == fmt.exponent_mask:
        return Kind.INFINITY if fraction == 0 else Kind.NAN
    if biased_exponent == 0 and fraction == 0:
        return Kind.ZERO
    # Normal, or subnormal if the biased exponent is zero
    return Kind.REGULAR


def parse(fmt, raw):
    '''Decode a storage word of the given format and return an ArbFloat.'''
    sign, biased_exponent, fraction = extract_fields(fmt, raw)
    kind = classify(fmt, biased_exponent, fraction)
    significand = -1 if sign else 1
    if kind != Kind.REGULAR:
        return ArbFloat(kind, significand)

    # Adding precision - 1 to the bias lets the fraction be read as an integer rather than
    # as a fixed-point number in [1, 2).
    exponent = biased_exponent - (fmt.exponent_bias + fmt.precision - 1)
    if biased_exponent == 0:
        # Subnormals have no integer bit but share the exponent of the smallest normals
        return ArbFloat(kind, significand * fraction, exponent + 1)
    return ArbFloat(kind, significand * (fraction | fmt.integer_bit), exponent)


def parse_bytes(fmt, raw, endianness=None):
    '''Decode the byte encoding of a storage word and return an ArbFloat.

    Endianness can be 'big' or 'little'.  If None, that of the current context is used.'''
    size = fmt.byte_width
    if len(raw) != size:
        raise ValueError(f'expected {size} bytes to parse; got {len(raw)}')
    return parse(fmt, int.from_bytes(raw, endianness or get_context().endianness))


#
# Useful internal helper routines
#

def trailing_zeros(value):
    '''Return the number of trailing zero bits in a nonzero integer's magnitude.'''
    return (value & -value).bit_length() - 1


#
# Context handling
#

_thread_state = threading.local()


def get_context():
    '''Return the current thread's context.  A thread starts with a copy of DefaultContext.'''
    context = getattr(_thread_state, 'context', None)
    if context is None:
        context = _thread_state.context = DefaultContext.copy()
    return context


def set_context(context):
    '''Make context (not a copy of it) the current thread's context.'''
    _thread_state.context = context


@contextmanager
def local_context(context=None):
    '''Run a with-block under a copy of context, or of the current context if none is given,
    and reinstate the current context afterwards.'''
    saved = get_context()
    local = (context or saved).copy()
    set_context(local)
    try:
        yield local
    finally:
        set_context(saved)


#
# Command line
#

def storage_word(text):
    '''Parse a storage word given on the command line, in any base Python accepts.'''
    try:
        value = int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f'invalid storage word: {text!r}') from None
    if not 0 <= value < 1 << STORAGE_BITS:
        raise argparse.ArgumentTypeError(f'storage word out of range: {text!r}')
    return value


def print_examples(out):
    for raw in (0x8000_0000, 0x7F80_0000, 0x7FC0_0000, 0x3F80_0000):
        print(repr(parse(Binary32, raw)), file=out)
    print(repr(parse(Binary64, 0x3FF0_0000_0000_0000)), file=out)
    print(file=out)
    # The 3-bit format with a single fraction bit and a single exponent bit
    toy_format = FloatFormat(1, 1)
    for raw in range(1 << toy_format.width):
        print(repr(parse(toy_format, raw)), file=out)


def main(argv=None, out=None):
    '''Print the decoding of storage words given on the command line.  Returns the exit
    status.'''
    out = out or sys.stdout
    parser = argparse.ArgumentParser(
        prog='arbfloat',
        description='Decode binary floating point storage words.')
    parser.add_argument('words', nargs='*', metavar='WORD', type=storage_word,
                        help='storage words to decode, e.g. 0x3f800000')
    parser.add_argument('-H', '--half', action='store_const', dest='format', const=Binary16,
                        help='IEEE binary16')
    parser.add_argument('-s', '--single', action='store_const', dest='format',
                        const=Binary32, help='IEEE binary32')
    parser.add_argument('-d', '--double', action='store_const', dest='format',
                        const=Binary64, help='IEEE binary64')
    parser.add_argument('-b', '--bfloat16', action='store_const', dest='format',
                        const=BFloat16, help='bfloat16')
    parser.add_argument('-e', '--exponent-bits', type=int,
                        help='exponent bits of a custom format')
    parser.add_argument('-f', '--fraction-bits', type=int,
                        help='fraction bits of a custom format')
    parser.add_argument('--enumerate', action='store_true',
                        help='decode every storage word of the format')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    custom = (args.exponent_bits, args.fraction_bits)
    if any(bits is not None for bits in custom):
        if None in custom:
            parser.error('a custom format needs both --exponent-bits and --fraction-bits')
        if args.format is not None:
            parser.error('a custom format cannot be combined with a named format')
        try:
            fmt = FloatFormat(args.fraction_bits, args.exponent_bits)
        except FormatError as e:
            print(f'arbfloat: {e}', file=sys.stderr)
            return 1
    else:
        fmt = args.format or get_context().default_format

    if args.enumerate:
        if fmt.width > 16:
            parser.error(f'refusing to enumerate a {fmt.width}-bit format')
        words = range(1 << fmt.width)
    elif args.words:
        words = args.words
    else:
        print_examples(out)
        return 0

    logger.debug('decoding %d words as %r', len(words), fmt)
    for raw in words:
        print(repr(parse(fmt, raw)), file=out)
    return 0


#
# Constants are predefined formats.
#

Binary16 = FloatFormat.from_IEEE(16)
Binary32 = FloatFormat.from_IEEE(32)
Binary64 = FloatFormat.from_IEEE(64)
BFloat16 = FloatFormat(7, 8)

DefaultContext = Context()


if __name__ == '__main__':
    sys.exit(main())
