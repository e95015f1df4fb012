# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import re
import fractions
from public import public

_spice_number = re.compile(
    r"^([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:e[+-]?[0-9]+)?)(meg|mil|[fpnumkgt])?([a-z]*)$",
    re.IGNORECASE,
)

@public
class Rational(fractions.Fraction):
    """
    Exact numeric type for simulation parameters such as step sizes and
    streaming windows, which are usually written with SPICE scale factors.

    It extends :class:`fractions.Fraction` from Python's standard library:

    - The constructor accepts SPICE literals: "100n", "0.1N", "20ns",
      "1.5meg", "3mil". Scale factors are case-insensitive; "m" is milli and
      "meg" is mega, as in SPICE. Letters after the scale factor are units
      and ignored.
    - The constructor supports the format "f'[numerator]/[denominator]",
      e.g.: Rational("f'15/19").
    - Floats are converted via their shortest repr, so Rational(1e-10)
      equals Rational("0.1n") instead of the binary approximation.
    - str() picks an SI suffix so that the integer part is between 1 and
      999. compat_str() gives the exponent form used in engine commands.
    """

    __slots__ = []

    sisuffix = {-15: "f", -12: "p", -9: "n", -6: "u", -3: "m", 0: "", 3: "k", 6: "meg", 9: "g", 12: "t"}
    sisuffix_rev = {c: n for n, c in sisuffix.items() if c}

    def __new__(cls, number=0, denominator=None):
        if denominator is None:
            if isinstance(number, float):
                number = repr(number)
            if isinstance(number, str):
                number = number.strip()
                if number.startswith("f'"):
                    num, den = number[2:].split("/", 1)
                    return super().__new__(cls, int(num), int(den))
                m = _spice_number.match(number)
                if not m:
                    raise ValueError(f"Invalid SPICE number: {number!r}")
                mantissa, scale, _unit = m.groups()
                value = fractions.Fraction(mantissa)
                if scale:
                    scale = scale.lower()
                    if scale == "mil":
                        value *= fractions.Fraction(254, 10**7)
                    else:
                        value *= fractions.Fraction(10) ** cls.sisuffix_rev[scale]
                return super().__new__(cls, value)
        return super().__new__(cls, number, denominator)

    def __repr__(self):
        return f"R('{self}')"

    def decimal_fraction(self):
        den = self.denominator
        num = self.numerator
        if num == 0:
            return 0, 0
        exp = 0
        while den % 10 == 0:
            den //= 10
            exp -= 1
        while den % 5 == 0:
            den //= 5
            exp -= 1
            num *= 2
        while den % 2 == 0:
            den //= 2
            exp -= 1
            num *= 5
        if den != 1:
            raise ValueError("Cannot be represented as decimal fraction.")
        while num % 10 == 0:
            num //= 10
            exp += 1
        return num, exp

    def __str__(self):
        try:
            num, exp = self.decimal_fraction()
        except ValueError:
            return f"f'{self.numerator}/{self.denominator}"
        if num == 0:
            return "0"
        sign = '-' if num < 0 else ''
        num = abs(num)
        numdigits = len(str(num))
        exp2 = 0
        while exp + numdigits > 3:
            exp2 += 3
            exp -= 3
        while exp + numdigits <= 0:
            exp2 -= 3
            exp += 3
        numstr = str(num)
        if exp >= 0:
            numstr += "0"*exp
        else:
            numstr = numstr[:exp] + "." + numstr[exp:]
        try:
            suffix = self.sisuffix[exp2]
        except KeyError:
            return sign + numstr + f"e{exp2}"
        return sign + numstr + suffix

    def compat_str(self):
        """
        Returns a string like "1.234568e-3", which every SPICE dialect reads.
        For rational numbers whose decimal fractions are periodic, accuracy
        is lost.
        """
        try:
            num, exp = self.decimal_fraction()
        except ValueError:
            return "{:e}".format(float(self))
        sign = '-' if num < 0 else ''
        digits = str(abs(num))
        exp += len(digits) - 1
        if len(digits) > 1:
            return f"{sign}{digits[0]}.{digits[1:]}e{exp}"
        else:
            return f"{sign}{digits[0]}.0e{exp}"

    def __format__(self, spec):
        if spec in ('s', ''):
            return str(self)
        elif spec == 'e':
            return self.compat_str()
        else:
            return super().__format__(spec)

    def __mul__(self, other):
        return type(self)(super().__mul__(other))

    def __add__(self, other):
        return type(self)(super().__add__(other))

    def __sub__(self, other):
        return type(self)(super().__sub__(other))

    def __truediv__(self, other):
        return type(self)(super().__truediv__(other))

public(R = Rational) # alias
