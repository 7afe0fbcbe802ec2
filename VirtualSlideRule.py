#!/usr/bin/env python3

"""
Virtual Slide Rule: movable scales, a draggable slide and a cursor hairline
Available division rule sets: SingleDecadeLog TwoDecadeLog

Table of Contents
   1. Setup
   2. Scales
   3. Divisions and Rule Sets
   4. Drawing Surfaces
   5. Scale Rendering
   6. Slide Rule
   7. Models
   8. Commands
"""

# ----------------------1. Setup----------------------------

import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cache
from xml.etree import ElementTree

import toml
from PIL import Image, ImageDraw, ImageFont
import drawsvg as svg
import ziamath as zm

logger = logging.getLogger(__name__)


def keys_of(obj: object, kind: type = object):
    return [k for k, v in obj.__dict__.items() if not k.startswith('__') and isinstance(v, kind)]


def clamp(x, lo, hi):
    return max(lo, min(hi, x))


def px_round(x: float) -> int:
    """Round half up, matching how canvas pixel positions are keyed."""
    return math.floor(x + 0.5)


TEN = 10
FF = 255


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF), (0, 0, 0)
    RED = (FF, 0, 0)

    INK = (0x3A, 0x2A, 0x1A)  # engraving brown
    BROWN = (0xA5, 0x2A, 0x2A)  # conventional color for π gauge marks
    IVORY = (0xF8, 0xF3, 0xE3)  # strip background
    CURSOR = (0xC8, 0x1E, 0x1E)  # hairline
    CURSOR_EDGE = (0x9A, 0xA8, 0xB0)

    @staticmethod
    @cache
    def to_pil(col_spec):
        return col_spec.value if isinstance(col_spec, Color) else col_spec

    @classmethod
    def to_svg(cls, col):
        col = cls.to_pil(col)
        if isinstance(col, tuple):
            return f'rgb({col[0]},{col[1]},{col[2]})'
        return col

    @classmethod
    def from_str(cls, color: str):
        return getattr(cls, color.upper(), color)


class FontSize(Enum):
    SC_LBL = 14
    MARK = 12
    READOUT = 11


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'


class Align(Enum):
    """Scale alignment within a slot: ticks grow from the top edge down, or from the bottom edge up"""
    UPPER, LOWER = 'top', 'bottom'


class Component(Enum):
    """Physical parts of the slide rule that carry scales, top to bottom"""
    UPPER_STATOR, SLIDE, LOWER_STATOR = 'upper_stator', 'slide', 'lower_stator'

    @classmethod
    def from_value(cls, component):
        if isinstance(component, cls):
            return component
        return next((c for c in cls if c.value == component), None)


@dataclass(frozen=True)
class Style:
    ink: Color = Color.INK
    """color of ticks, numerals and the scale border"""
    bg: Color = Color.IVORY
    """strip background color"""
    cursor: Color = Color.CURSOR
    """hairline color"""
    cursor_edge: Color = Color.CURSOR_EDGE
    mark_font_size: int = FontSize.MARK.value
    label_font_size: int = FontSize.SC_LBL.value

    @classmethod
    def from_dict(cls, style_def: dict):
        style_def = dict(style_def)
        for key in ('ink', 'bg', 'cursor', 'cursor_edge'):
            if key in style_def:
                style_def[key] = Color.from_str(style_def[key])
        return cls(**style_def)

    @staticmethod
    @cache
    def font_for(font_size: int):
        return ImageFont.load_default(font_size)

    @staticmethod
    def sym_w(symbol: str, font) -> int:
        (x1, _, x2, _) = font.getbbox(symbol)
        return x2 - x1


class Sym:
    SUPERSCRIPTS = str.maketrans('0123456789-+', '⁰¹²³⁴⁵⁶⁷⁸⁹⁻⁺')
    RE_EXPON_CARET = re.compile(r'\^\{?([-+0-9]+)\}?')
    LATEX_SUBS = {
        '\\sqrt': '√',
        '\\pi': 'π',
        '\\phi': 'φ',
        '\\cdot': '·',
        '\\log ': 'log ',
    }

    @classmethod
    def num_sym(cls, num) -> str:
        if isinstance(num, int):
            return str(num)
        elif float(num).is_integer():
            return str(int(num))
        return str(round(num, 6))

    @staticmethod
    def is_latex(symbol: str) -> bool:
        return '\\' in symbol or '^' in symbol

    @classmethod
    def to_unicode(cls, symbol: str) -> str:
        """Caret exponents and a few LaTeX commands as plain Unicode, for raster output."""
        for latex, uni in cls.LATEX_SUBS.items():
            symbol = symbol.replace(latex, uni)
        symbol = cls.RE_EXPON_CARET.sub(lambda m: m.group(1).translate(cls.SUPERSCRIPTS), symbol)
        return symbol.replace('{', '').replace('}', '')


# ----------------------2. Scales----------------------------


class ScaleType(Enum):
    LOGARITHMIC, LINEAR = 'logarithmic', 'linear'

    @classmethod
    def coerce(cls, scale_type):
        """Known type names become members; anything else is kept as given."""
        if isinstance(scale_type, cls):
            return scale_type
        return next((t for t in cls if t.value == scale_type), scale_type)


@dataclass(frozen=True)
class Scale:
    """Pure value<->position mapping for a numeric axis between its left and right index."""
    type: ScaleType = ScaleType.LOGARITHMIC
    left_index: float = 1
    right_index: float = TEN

    def __post_init__(self):
        object.__setattr__(self, 'type', ScaleType.coerce(self.type))
        if not self.left_index < self.right_index:
            raise ValueError(f'Scale left index {self.left_index} must be below right index {self.right_index}')
        if self.type == ScaleType.LOGARITHMIC and self.left_index <= 0:
            raise ValueError(f'Logarithmic scale indexes must be positive, got {self.left_index}')

    @classmethod
    def from_dict(cls, scale_def: dict):
        scale_type = ScaleType.coerce(scale_def.get('type', ScaleType.LOGARITHMIC.value))
        if not isinstance(scale_type, ScaleType):
            raise ValueError(f'Unrecognized scale type: {scale_type}')
        return cls(scale_type, scale_def.get('left_index', 1), scale_def.get('right_index', TEN))

    @property
    def log_range(self):
        return math.log10(self.right_index / self.left_index)

    @property
    def is_single_decade(self):
        return self.type == ScaleType.LOGARITHMIC and self.right_index / self.left_index == TEN

    def contains(self, value: float) -> bool:
        return self.left_index <= value <= self.right_index

    def to_normalized(self, value: float):
        """Fraction of the scale length (0 at left index, 1 at right index) where value sits."""
        if self.type == ScaleType.LOGARITHMIC:
            if value <= 0:
                raise ValueError(f'{value} is outside the domain of a logarithmic scale')
            return math.log10(value / self.left_index) / self.log_range
        elif self.type == ScaleType.LINEAR:
            return (value - self.left_index) / (self.right_index - self.left_index)
        logger.error(f"Scale type '{self.type}' is not supported.")
        return None

    def to_value(self, normalized: float):
        if self.type == ScaleType.LOGARITHMIC:
            return self.left_index * math.pow(TEN, normalized * self.log_range)
        elif self.type == ScaleType.LINEAR:
            return self.left_index + normalized * (self.right_index - self.left_index)
        logger.error(f"Scale type '{self.type}' is not supported.")
        return None


@dataclass(frozen=True)
class NamedConstant:
    sym: str
    value: float
    comment: str = None
    aliases: tuple[str, ...] = ()


class Constants:
    pi = NamedConstant('π', math.pi, 'ratio of circle circumference to diameter', ('pi',))
    e = NamedConstant('e', math.e, 'base of natural logarithms')
    phi = NamedConstant('φ', (1 + math.sqrt(5)) / 2, 'golden ratio', ('phi',))
    sqrt2 = NamedConstant('√2', math.sqrt(2), 'diagonal of the unit square', ('sqrt2',))
    sqrt3 = NamedConstant('√3', math.sqrt(3), 'height of the unit-edged tetrahedron face, doubled', ('sqrt3',))

    @classmethod
    @cache
    def by_name(cls) -> dict[str, NamedConstant]:
        result = {}
        for key in keys_of(cls, NamedConstant):
            const = getattr(cls, key)
            for name in (const.sym, *const.aliases):
                result[name] = const
        return result

    @classmethod
    def find(cls, name: str):
        return cls.by_name().get(name)

    @classmethod
    def named(cls, name: str) -> NamedConstant:
        if (const := cls.find(name)) is None:
            raise KeyError(f"Constant '{name}' doesn't exist.")
        return const


@dataclass(frozen=True)
class Mark:
    """A labeled tick: a numeral or a named constant."""
    value: float
    text: str


@dataclass(frozen=True)
class SpecialMark:
    """A one-off annotation tick with its own stroke, drawn whether or not it is a scale mark."""
    value: float
    label: str = None
    height: float = 15
    width: float = 1.5
    color: object = None

    @classmethod
    def of(cls, mark_def):
        if isinstance(mark_def, cls):
            return mark_def
        mark_def = dict(mark_def)
        value = mark_def.pop('value')
        if isinstance(value, str):
            try:
                value = Constants.named(value).value
            except KeyError as e:
                raise ValueError(e.args[0]) from e
        if isinstance(mark_def.get('color'), str):
            mark_def['color'] = Color.from_str(mark_def['color'])
        return cls(value, **mark_def)


@dataclass(frozen=True)
class AutoMarks:
    """Canonical numerals, chosen from the scale type and span."""
    SINGLE_DECADE = (1, 1.5, 2, 2.5, 3, 4, 5, 6, 7, 8, 9, 10)

    def marks_for(self, sc: Scale) -> list[Mark]:
        if sc.type == ScaleType.LOGARITHMIC:
            if sc.is_single_decade:
                values = self.SINGLE_DECADE
            else:
                decades = range(math.floor(math.log10(sc.left_index)), math.ceil(math.log10(sc.right_index)) + 1)
                values = [TEN ** decade * mult for decade in decades for mult in range(1, TEN)]
            return [Mark(v, Sym.num_sym(v)) for v in values if sc.contains(v)]
        elif sc.type == ScaleType.LINEAR:
            step = (sc.right_index - sc.left_index) / TEN
            return [Mark(v, Sym.num_sym(v)) for v in (sc.left_index + i * step for i in range(TEN + 1))]
        return []


@dataclass(frozen=True)
class ExplicitMarks:
    """Marks listed in order, each a number or a constant name like 'π' or 'pi'."""
    entries: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, 'entries', tuple(self.entries))

    @staticmethod
    def mark_of(entry) -> Mark:
        if isinstance(entry, str):
            if const := Constants.find(entry):
                return Mark(const.value, const.sym)
            return Mark(float(entry), entry)
        return Mark(entry, Sym.num_sym(entry))

    def marks_for(self, sc: Scale) -> list[Mark]:
        marks = []
        for entry in self.entries:
            try:
                marks.append(self.mark_of(entry))
            except (TypeError, ValueError):
                logger.error(f"Mark '{entry}' is neither a number nor a named constant; skipping it.")
        return marks


def marks_of(marks_def):
    if isinstance(marks_def, (AutoMarks, ExplicitMarks)):
        return marks_def
    if marks_def is None or marks_def == 'auto':
        return AutoMarks()
    if isinstance(marks_def, str):
        raise ValueError(f"Marks must be 'auto' or a sequence, got: {marks_def}")
    return ExplicitMarks(tuple(marks_def))


# ----------------------3. Divisions and Rule Sets----------------------------


@dataclass(frozen=True)
class DivisionSpec:
    name: str
    divisor: int
    """subdivisions per unit"""
    default_height: float
    default_width: float
    min_pixel_spacing: float


class ScaleDivisions:
    seconds = DivisionSpec('seconds', 2, 12, 0.5, 15)  # 0.5 spacing
    fifths = DivisionSpec('fifths', 5, 8, 0.5, 8)  # 0.2 spacing
    tenths = DivisionSpec('tenths', 10, 10, 0.5, 5)  # 0.1 spacing
    twentieths = DivisionSpec('twentieths', 20, 7, 0.5, 3)  # 0.05 spacing
    fiftieths = DivisionSpec('fiftieths', 50, 6, 0.5, 2)  # 0.02 spacing
    hundredths = DivisionSpec('hundredths', 100, 4, 0.5, 1.5)  # 0.01 spacing
    twoHundredths = DivisionSpec('twoHundredths', 200, 3, 0.5, 1)  # 0.005 spacing
    fiveHundredths = DivisionSpec('fiveHundredths', 500, 3, 0.5, 0.8)  # 0.002 spacing

    @classmethod
    def named(cls, name: str) -> DivisionSpec:
        division = cls.__dict__.get(name)
        if not isinstance(division, DivisionSpec):
            raise KeyError(f"ScaleDivision of type '{name}' doesn't exist.")
        return division


DEFAULT_DIVISION_NAMES = (ScaleDivisions.tenths.name,)


@dataclass(frozen=True)
class DivisionRule:
    """Which subdivision tiers apply across one sub-range of a scale."""
    range: tuple[float, float]
    division_names: tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'range', tuple(self.range))
        object.__setattr__(self, 'division_names', tuple(self.division_names))

    @classmethod
    def from_dict(cls, rule_def: dict):
        return cls(tuple(rule_def['range']), tuple(rule_def['divisions']))

    def contains(self, range_start: float, range_end: float) -> bool:
        return range_start >= self.range[0] and range_end <= self.range[1]


RuleSet = tuple[DivisionRule, ...]


def rule_set(*rule_defs) -> RuleSet:
    return tuple(DivisionRule((start, end), tuple(names.split())) for (start, end, names) in rule_defs)


class DivisionRuleSets:
    SingleDecadeLog: RuleSet = rule_set(
        (1, 1.5, 'seconds tenths twentieths hundredths'),
        (1.5, 2, 'seconds tenths twentieths hundredths'),
        (2, 3, 'seconds tenths fiftieths'),
        (3, 4, 'seconds tenths fiftieths'),
        (4, 5, 'seconds tenths twentieths'),
        (5, 6, 'seconds tenths twentieths'),
        (6, 7, 'seconds tenths twentieths'),
        (7, 8, 'seconds tenths twentieths'),
        (8, 9, 'seconds tenths'),
        (9, 10, 'seconds tenths'),
    )
    # The second decade reads "tenths" as unit steps and "seconds" as steps of 5; see division_steps.
    TwoDecadeLog: RuleSet = rule_set(
        (1, 1.5, 'seconds tenths twentieths hundredths'),
        (1.5, 2, 'seconds tenths twentieths hundredths'),
        (2, 3, 'seconds tenths fiftieths'),
        (3, 4, 'seconds tenths fiftieths'),
        (4, 5, 'seconds tenths twentieths'),
        (5, 6, 'seconds tenths twentieths'),
        (6, 7, 'seconds tenths'),
        (7, 8, 'seconds tenths'),
        (8, 9, 'seconds'),
        (9, 10, 'seconds'),
        (10, 15, 'tenths'),
        (15, 20, 'tenths'),
        (20, 30, 'seconds'),
        (30, 40, 'seconds'),
        (40, 50, 'seconds'),
        (50, 60, 'seconds'),
        (60, 70, 'seconds'),
        (70, 80, 'seconds'),
        (80, 90, 'seconds'),
        (90, 100, 'seconds'),
    )

    @classmethod
    def named(cls, name: str) -> RuleSet:
        for key in keys_of(cls, tuple):
            if key.lower() == name.lower():
                return getattr(cls, key)
        raise ValueError(f'Unrecognized division rule set: {name}')

    @classmethod
    def from_def(cls, rules_def) -> RuleSet:
        if isinstance(rules_def, str):
            return cls.named(rules_def)
        return tuple(r if isinstance(r, DivisionRule) else DivisionRule.from_dict(r) for r in rules_def)


def select_divisions(rules: RuleSet, query_range) -> list[DivisionSpec]:
    """
    Subdivision tiers for the first rule containing the queried range, in the rule's order.
    Falls back to tenths where no rule applies; unknown division names are reported and skipped.
    """
    range_start, range_end = query_range
    rule = next((r for r in rules if r.contains(range_start, range_end)), None)
    result = []
    for div_name in rule.division_names if rule else DEFAULT_DIVISION_NAMES:
        try:
            result.append(ScaleDivisions.named(div_name))
        except KeyError as e:
            logger.error(e.args[0])
    return result


def division_steps(rule_range, division: DivisionSpec) -> list[float]:
    """Evenly spaced values across a rule range, both ends included."""
    range_start, range_end = rule_range
    range_w = range_end - range_start
    if range_start >= TEN and division.name == ScaleDivisions.tenths.name:
        num_steps = range_w
    elif range_start >= TEN and division.name == ScaleDivisions.seconds.name:
        num_steps = range_w / 5
    else:
        num_steps = math.floor(range_w * division.divisor)
    if num_steps <= 0:
        return [range_start]
    step = range_w / num_steps
    return [range_start + i * step for i in range(math.floor(num_steps) + 1)]


def scale_ticks(sc: Scale, rules: RuleSet):
    """(value, division) for every subdivision tick of every rule range that falls on the scale."""
    for rule in rules:
        for division in select_divisions(rules, rule.range):
            for value in division_steps(rule.range, division):
                if sc.contains(value):
                    yield value, division


# ----------------------4. Drawing Surfaces----------------------------


class Canvas:
    """
    Immediate-mode drawing surface with the state model of an HTML canvas 2D context.
    Coordinates pass through the current scale+translate transform before reaching the backend;
    this base class keeps the state and draws nothing.
    """
    STATE_ATTRS = ('stroke_style', 'fill_style', 'line_width', 'font_size', '_transform')

    def __init__(self, width: float, height: float, pixel_ratio: float = 1, bg=Color.WHITE):
        self.width, self.height = width, height
        self.pixel_ratio = pixel_ratio
        self.bg = bg
        self.stroke_style = Color.BLACK
        self.fill_style = Color.BLACK
        self.line_width = 1
        self.font_size = FontSize.MARK.value
        self._transform = (1, 1, 0, 0)  # sx, sy, tx, ty
        self._stack = []
        self._path = []
        self.scale(pixel_ratio, pixel_ratio)

    @classmethod
    def for_format(cls, out_format: OutFormat, width, height, pixel_ratio=1, bg=Color.WHITE):
        if out_format == OutFormat.PNG:
            return RasterCanvas(width, height, pixel_ratio, bg)
        elif out_format == OutFormat.SVG:
            return SVGCanvas(width, height, pixel_ratio, bg)
        raise ValueError(f'Unsupported output format: {out_format}')

    @property
    def device_wh(self) -> tuple[int, int]:
        return math.ceil(self.width * self.pixel_ratio), math.ceil(self.height * self.pixel_ratio)

    def to_device(self, x: float, y: float) -> tuple[float, float]:
        sx, sy, tx, ty = self._transform
        return x * sx + tx, y * sy + ty

    def save(self):
        self._stack.append(tuple(getattr(self, attr) for attr in self.STATE_ATTRS))

    def restore(self):
        if self._stack:
            for attr, value in zip(self.STATE_ATTRS, self._stack.pop()):
                setattr(self, attr, value)

    def translate(self, dx: float, dy: float):
        sx, sy, tx, ty = self._transform
        self._transform = (sx, sy, tx + dx * sx, ty + dy * sy)

    def scale(self, fx: float, fy: float):
        sx, sy, tx, ty = self._transform
        self._transform = (sx * fx, sy * fy, tx, ty)

    def begin_path(self):
        self._path = []

    def move_to(self, x: float, y: float):
        self._path.append([self.to_device(x, y)])

    def line_to(self, x: float, y: float):
        if not self._path:
            self.move_to(x, y)
        else:
            self._path[-1].append(self.to_device(x, y))

    def stroke(self):
        width = self.line_width * self._transform[0]
        for points in self._path:
            if len(points) > 1:
                self._draw_polyline(points, self.stroke_style, width)

    def fill_text(self, text: str, x: float, y: float):
        """Draw text with its left end at x and its baseline at y."""
        x0, y0 = self.to_device(x, y)
        self._draw_text(x0, y0, text, self.fill_style, self.font_size * self._transform[1])

    def measure_text(self, text: str) -> float:
        return Style.sym_w(text, Style.font_for(self.font_size))

    def clear_rect(self, x: float, y: float, w: float, h: float):
        x0, y0 = self.to_device(x, y)
        x1, y1 = self.to_device(x + w, y + h)
        self._clear(x0, y0, x1, y1)

    def paste(self, other: 'Canvas', x: float, y: float):
        self._paste(other, *self.to_device(x, y))

    # Backend primitives, in device pixels:
    def _draw_polyline(self, points, col, width): pass
    def _draw_text(self, x_left, y_baseline, text: str, col, font_size): pass
    def _clear(self, x0, y0, x1, y1): pass
    def _paste(self, other, x0, y0): pass


class RasterCanvas(Canvas):
    def __init__(self, width, height, pixel_ratio=1, bg=Color.WHITE):
        super().__init__(width, height, pixel_ratio, bg)
        self.image = Image.new('RGB', self.device_wh, Color.to_pil(bg))
        self.r = ImageDraw.Draw(self.image)

    def _draw_polyline(self, points, col, width):
        self.r.line(points, fill=Color.to_pil(col), width=max(1, round(width)))

    def _draw_text(self, x_left, y_baseline, text, col, font_size):
        if Sym.is_latex(text):
            text = Sym.to_unicode(text)
        font = Style.font_for(max(1, round(font_size)))
        y_top = y_baseline - font.getbbox('A')[3]
        self.r.text((x_left, y_top), text, font=font, fill=Color.to_pil(col))

    def _clear(self, x0, y0, x1, y1):
        self.r.rectangle((min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)), fill=Color.to_pil(self.bg))

    def _paste(self, other, x0, y0):
        self.image.paste(other.image, (px_round(x0), px_round(y0)))

    def save_as(self, basename: str) -> str:
        output_full_path = basename + '.png'
        self.image.save(output_full_path, 'PNG')
        return output_full_path


class SVGCanvas(Canvas):
    font_family = 'Times New Roman, Times, serif'

    def __init__(self, width, height, pixel_ratio=1, bg=Color.WHITE):
        super().__init__(width, height, pixel_ratio, bg)
        self.drawing = svg.Drawing(*self.device_wh)
        self._fill_bg()

    def _fill_bg(self):
        self.drawing.append(svg.Rectangle(0, 0, *self.device_wh, fill=Color.to_svg(self.bg)))

    def _draw_polyline(self, points, col, width):
        color = Color.to_svg(col)
        if len(points) == 2:
            (x0, y0), (x1, y1) = points
            self.drawing.append(svg.Line(x0, y0, x1, y1, stroke=color, stroke_width=width))
        else:
            coords = [c for point in points for c in point]
            self.drawing.append(svg.Lines(*coords, close=False, fill='none', stroke=color, stroke_width=width))

    def _draw_text(self, x_left, y_baseline, text, col, font_size):
        if Sym.is_latex(text):
            self._draw_latex(x_left, y_baseline, text, col, font_size)
            return
        self.drawing.append(svg.Text(text, font_size, x_left, y_baseline,
                                     font_family=self.font_family, fill=Color.to_svg(col)))

    def _draw_latex(self, x_left, y_baseline, text, col, font_size):
        latex = zm.Latex(text, size=font_size, color=Color.to_svg(col), inline=True)
        _, h = latex.getsize()
        latex_svg = latex.svgxml()
        latex_svg.set('x', str(x_left))
        latex_svg.set('y', str(y_baseline - h))
        desc = latex_svg.makeelement('desc', {})
        desc.text = text
        latex_svg.append(desc)
        self.drawing.append(svg.Raw(ElementTree.tostring(latex_svg, encoding='unicode')))

    def _clear(self, x0, y0, x1, y1):
        w, h = self.device_wh
        if min(x0, x1) <= 0 and min(y0, y1) <= 0 and max(x0, x1) >= w and max(y0, y1) >= h:
            self.drawing.elements.clear()
            self._fill_bg()
        else:
            self.drawing.append(svg.Rectangle(min(x0, x1), min(y0, y1), abs(x1 - x0), abs(y1 - y0),
                                              fill=Color.to_svg(self.bg)))

    def _paste(self, other, x0, y0):
        group = svg.Group(transform=f'translate({x0},{y0})')
        for elem in other.drawing.elements:
            group.append(elem)
        self.drawing.append(group)

    def save_as(self, basename: str) -> str:
        output_full_path = basename + '.svg'
        self.drawing.save_svg(output_full_path)
        return output_full_path


# ----------------------5. Scale Rendering----------------------------


MARK_H = 15
"""height of labeled mark ticks"""
MARK_TOLERANCE = 0.001
"""how close a subdivision tick may come to a mark before the mark replaces it"""
TICK_PRECISION = 3
"""decimal places kept for snap targets"""


@dataclass(frozen=True)
class RendererConfig:
    """Presentation of one scale instance in one slot."""
    name: str = 'Scale'
    secondary_label: str = None
    slot: int = 0
    orientation: Align = Align.LOWER
    marks: object = AutoMarks()
    """AutoMarks or ExplicitMarks"""
    special_marks: tuple[SpecialMark, ...] = ()
    division_rules: RuleSet = DivisionRuleSets.SingleDecadeLog
    reversed: bool = False
    slot_height: int = 40

    @classmethod
    def from_dict(cls, config_def: dict, slot_height: int = 40):
        orientation = config_def.get('orientation') or Align.LOWER
        return cls(name=config_def.get('name') or 'Scale',
                   secondary_label=config_def.get('secondary_label'),
                   slot=config_def.get('slot') or 0,
                   orientation=orientation if isinstance(orientation, Align) else Align(orientation),
                   marks=marks_of(config_def.get('marks')),
                   special_marks=tuple(SpecialMark.of(m) for m in config_def.get('special_marks') or ()),
                   division_rules=DivisionRuleSets.from_def(config_def.get('division_rules')
                                                            or DivisionRuleSets.SingleDecadeLog),
                   reversed=bool(config_def.get('reversed', False)),
                   slot_height=slot_height)


def tick_values_for(sc: Scale, config: RendererConfig) -> tuple[float, ...]:
    """
    Every legal snap target on a scale instance, ascending:
    subdivision ticks (rounded to absorb float drift), both indexes, marks and in-bounds special marks.
    """
    tick_values = {round(value, TICK_PRECISION) for value, _ in scale_ticks(sc, config.division_rules)}
    tick_values.update((sc.left_index, sc.right_index))
    tick_values.update(mark.value for mark in config.marks.marks_for(sc))
    tick_values.update(mark.value for mark in config.special_marks if sc.contains(mark.value))
    return tuple(sorted(tick_values))


def nearest_tick(tick_values, value: float) -> float:
    """The closest tick; on a tie the first in ascending order (the lower) wins."""
    nearest = tick_values[0]
    min_distance = abs(value - nearest)
    for tick in tick_values:
        if (distance := abs(value - tick)) < min_distance:
            nearest, min_distance = tick, distance
    return nearest


@dataclass(frozen=True)
class ScaleRenderer:
    """Draws one scale instance into its slot on a canvas, and maps pixels back to scale values."""
    canvas: Canvas
    pixel_width: float
    pixel_height: float
    buffer_space: float
    config: RendererConfig = RendererConfig()
    style: Style = Style()
    tick_values: tuple[float, ...] = None
    """precomputed snap targets; computed on demand when absent"""

    @property
    def effective_width(self):
        return self.pixel_width - 2 * self.buffer_space

    def normalized_to_pixel(self, normalized_pos: float) -> float:
        effective_pos = 1 - normalized_pos if self.config.reversed else normalized_pos
        return self.buffer_space + effective_pos * self.effective_width

    def pixel_to_normalized(self, pixel_x: float) -> float:
        effective_pos = (pixel_x - self.buffer_space) / self.effective_width
        return 1 - effective_pos if self.config.reversed else effective_pos

    def position_of(self, sc: Scale, value: float):
        """Canvas x of a value, or None if the scale cannot place it."""
        normalized_pos = sc.to_normalized(value)
        return None if normalized_pos is None else self.normalized_to_pixel(normalized_pos)

    def value_at(self, sc: Scale, pixel_x: float, snap=True):
        """
        Value under a canvas x position, clamped to the scale's indexes.
        :param bool snap: replace the exact value with the nearest legal tick value
        """
        exact_value = sc.to_value(clamp(self.pixel_to_normalized(pixel_x), 0, 1))
        if exact_value is None or not snap:
            return exact_value
        return nearest_tick(self.get_all_tick_values(sc), exact_value)

    def generate_marks(self, sc: Scale) -> list[Mark]:
        return self.config.marks.marks_for(sc)

    def get_all_tick_values(self, sc: Scale) -> tuple[float, ...]:
        return self.tick_values if self.tick_values is not None else tick_values_for(sc, self.config)

    def render(self, sc: Scale, clear_canvas=True):
        c, cfg = self.canvas, self.config
        if clear_canvas:
            c.clear_rect(-1, -1, self.pixel_width + 2, self.pixel_height + 2)
        if not isinstance(sc.type, ScaleType):
            logger.error(f"Scale type '{sc.type}' is not supported; skipping scale {cfg.name}.")
            return
        c.save()
        c.translate(0, cfg.slot * cfg.slot_height)
        c.stroke_style = c.fill_style = self.style.ink
        c.font_size = self.style.mark_font_size
        c.line_width = 1

        grow_from_bottom = cfg.orientation == Align.LOWER
        scale_y = cfg.slot_height if grow_from_bottom else 0

        # Scale border along the edge the ticks grow from
        c.begin_path()
        c.move_to(0, scale_y)
        c.line_to(self.pixel_width, scale_y)
        c.stroke()

        self.render_ticks(sc, grow_from_bottom)
        self.render_marks(sc, grow_from_bottom)
        self.render_special_marks(sc, grow_from_bottom)
        c.restore()

    def render_ticks(self, sc: Scale, grow_from_bottom: bool) -> int:
        """Draw unlabeled subdivision ticks, returning how many were drawn."""
        marked_values = ([mark.value for mark in self.generate_marks(sc)]
                         + [mark.value for mark in self.config.special_marks])
        drawn_positions = set()
        num_drawn = 0
        for value, division in scale_ticks(sc, self.config.division_rules):
            if any(abs(marked - value) < MARK_TOLERANCE for marked in marked_values):
                continue
            if (x := self.position_of(sc, value)) is None:
                continue
            x = px_round(x)
            pos_key = (x, division.name)
            if pos_key in drawn_positions:
                continue
            drawn_positions.add(pos_key)
            if self.draw_tick(x, division.default_height, division.default_width, grow_from_bottom):
                num_drawn += 1
        return num_drawn

    def render_marks(self, sc: Scale, grow_from_bottom: bool):
        for mark in self.generate_marks(sc):
            try:
                x = self.position_of(sc, mark.value)
            except ValueError as e:
                logger.error(f"Skipping mark '{mark.text}' on scale {self.config.name}: {e}")
                continue
            if x is None:
                continue
            is_index = mark.value in (sc.left_index, sc.right_index)
            self.draw_tick(x, MARK_H, 2 if is_index else 1, grow_from_bottom)
            self.draw_label(x, mark.text, MARK_H, grow_from_bottom)

    def render_special_marks(self, sc: Scale, grow_from_bottom: bool):
        c = self.canvas
        for mark in self.config.special_marks:
            if not sc.contains(mark.value) or (x := self.position_of(sc, mark.value)) is None:
                continue
            c.save()
            if mark.color:
                c.stroke_style = c.fill_style = mark.color
            self.draw_tick(x, mark.height, mark.width, grow_from_bottom)
            if mark.label:
                self.draw_label(x, mark.label, mark.height, grow_from_bottom)
            c.restore()

    def draw_tick(self, x: float, height: float, width: float, grow_from_bottom: bool) -> bool:
        if x < 0 or x > self.pixel_width:
            return False
        c = self.canvas
        base_y = self.config.slot_height if grow_from_bottom else 0
        c.begin_path()
        c.move_to(x, base_y)
        c.line_to(x, base_y - height if grow_from_bottom else base_y + height)
        c.line_width = width
        c.stroke()
        return True

    def draw_label(self, x: float, text: str, height: float, grow_from_bottom: bool):
        label_w = self.canvas.measure_text(text)
        base_y = self.config.slot_height if grow_from_bottom else 0
        label_y = base_y - height - 5 if grow_from_bottom else base_y + height + 15
        self.canvas.fill_text(text, x - label_w / 2, label_y)


# ----------------------6. Slide Rule----------------------------


@dataclass
class SlideRuleConfig:
    width: float = 900
    slot_height: float = 40
    buffer_space: float = 30
    snap_to_ticks: bool = True
    slots: dict[Component, int] = field(default_factory=lambda: {
        Component.UPPER_STATOR: 0, Component.SLIDE: 2, Component.LOWER_STATOR: 1})
    improve_quality: bool = True
    pixel_ratio: float = 1
    component_left_padding: float = 0
    """room left of the strips for secondary labels"""
    effective_width: float = None
    """drawable width between the buffers, in pixels"""

    def __post_init__(self):
        if self.effective_width is None:
            self.update_effective_width()

    def update_effective_width(self):
        self.effective_width = self.width - 2 * self.buffer_space - self.component_left_padding

    @property
    def drawable_w(self):
        return self.width - self.component_left_padding

    def component_h(self, component: Component):
        return max(self.slots.get(component, 0), 1) * self.slot_height

    @property
    def total_h(self):
        return sum(self.component_h(c) for c in Component)


@dataclass
class SlideState:
    position: float = 0
    """signed offset from rest, in pixels"""
    is_dragging: bool = False
    drag_start_x: float = 0


@dataclass
class CursorState:
    width: float = 96
    position: float = 0
    """left edge of the cursor, in pixels"""
    is_dragging: bool = False
    drag_start_x: float = 0
    min_position: float = 0
    max_position: float = 0

    @property
    def hairline_x(self):
        return self.position + self.width / 2


@dataclass(frozen=True)
class MountedScale:
    scale: Scale
    config: RendererConfig
    tick_values: tuple[float, ...] = ()
    """snap targets, computed once when mounted"""


@dataclass(frozen=True)
class ScaleLabel:
    component: Component
    slot: int
    text: str
    orientation: Align
    is_secondary: bool = False


class SlideRule:
    """
    Slide rule made of an upper stator, a slide and a lower stator, each stacking scales in slots.
    Mounting a scale redraws every strip; moving the slide or cursor refreshes the readouts.
    """
    LABEL_PADDING = 50
    RESET_TRANSITION_S = 0.3

    def __init__(self, width=900, slot_height=40, buffer_space=30,
                 upper_stator_slots=0, slide_slots=2, lower_stator_slots=1,
                 improve_quality=True, snap_to_ticks=True, pixel_ratio=1,
                 out_format=OutFormat.PNG, style: Style = None):
        self.out_format = out_format if isinstance(out_format, OutFormat)\
            else next((f for f in OutFormat if f.value == out_format), None)
        if self.out_format is None:
            raise ValueError(f'Unsupported output format: {out_format}')
        self.config = SlideRuleConfig(width=width, slot_height=slot_height, buffer_space=buffer_space,
                                      snap_to_ticks=snap_to_ticks,
                                      slots={Component.UPPER_STATOR: upper_stator_slots,
                                             Component.SLIDE: slide_slots,
                                             Component.LOWER_STATOR: lower_stator_slots},
                                      improve_quality=improve_quality, pixel_ratio=pixel_ratio)
        self.style = style or Style()
        self.lock = threading.RLock()
        self.developer_mode = False
        self.scale_configs: dict[Component, list[MountedScale]] = {c: [] for c in Component}
        self.scale_labels: list[ScaleLabel] = []
        self.cursor_values: list[tuple[str, str]] = []
        self.reset_until = 0.
        self.slide_state = SlideState()
        self._initialize_canvases()
        self._initialize_cursor()

    def _initialize_canvases(self):
        self.canvases = {c: self._setup_canvas(self.config.drawable_w, self.config.component_h(c))
                         for c in Component}

    def _setup_canvas(self, width, height) -> Canvas:
        canvas = Canvas.for_format(self.out_format, width, height, self.config.pixel_ratio, self.style.bg)
        if self.config.improve_quality:
            canvas.translate(0.5, 0.5)
        return canvas

    def _initialize_cursor(self):
        self.cursor = CursorState()
        self.cursor.position = self.config.buffer_space - self.cursor.width / 2
        self._update_cursor_bounds()

    # Drag input: the first start claims the drag until the end.

    def handle_slide_start(self, client_x: float):
        with self.lock:
            if self.cursor.is_dragging:
                return
            self.slide_state.is_dragging = True
            self.slide_state.drag_start_x = client_x - self.slide_state.position

    def handle_cursor_start(self, client_x: float):
        with self.lock:
            if self.slide_state.is_dragging:
                return
            self.cursor.is_dragging = True
            self.cursor.drag_start_x = client_x - self.cursor.position

    def handle_drag_move(self, client_x: float):
        with self.lock:
            if self.slide_state.is_dragging:
                self.set_slide_position(client_x - self.slide_state.drag_start_x)
            elif self.cursor.is_dragging:
                self.set_cursor_position(client_x - self.cursor.drag_start_x)

    def handle_drag_end(self):
        with self.lock:
            self.slide_state.is_dragging = False
            self.cursor.is_dragging = False

    def set_slide_position(self, position: float):
        with self.lock:
            limit = self.config.effective_width
            self.slide_state.position = clamp(position, -limit, limit)
            self._update_cursor_values()

    def set_cursor_position(self, position: float):
        with self.lock:
            self.cursor.position = clamp(position, self.cursor.min_position, self.cursor.max_position)
            self._update_cursor_values()

    def reset_slide(self):
        """Return the slide to rest; the transition window is cosmetic only."""
        with self.lock:
            self.reset_until = time.monotonic() + self.RESET_TRANSITION_S
            self.set_slide_position(0)

    @property
    def is_resetting(self):
        return time.monotonic() < self.reset_until

    def render(self, sc: Scale, config: dict = None, **options) -> RendererConfig:
        """
        Mount a scale on a component slot and redraw everything.
        :param Scale sc:
        :param dict config: component, slot, name, secondary_label, orientation, marks, special_marks,
            division_rules, reversed; keyword options override it
        """
        options = {**(config or {}), **options}
        component = Component.from_value(options.get('component'))
        if component is None:
            raise ValueError(f"Invalid component: {options.get('component')}")
        renderer_config = RendererConfig.from_dict(options, slot_height=self.config.slot_height)
        with self.lock:
            mounted = MountedScale(sc, renderer_config, tick_values_for(sc, renderer_config))
            self.scale_configs[component].append(mounted)
            self._update_layout_for_secondary_labels()
            self._render_all_scales()
            self._create_scale_labels()
        return renderer_config

    def mounted_scales(self):
        """(component, mounted scale) in visual order: by component, then slot."""
        for component in Component:
            for mounted in sorted(self.scale_configs[component], key=lambda m: m.config.slot):
                yield component, mounted

    def renderer_for(self, component: Component, mounted: MountedScale) -> ScaleRenderer:
        return ScaleRenderer(self.canvases[component], self.config.drawable_w, self.config.component_h(component),
                             self.config.buffer_space, mounted.config, self.style, mounted.tick_values)

    def _update_layout_for_secondary_labels(self):
        has_secondary_labels = any(m.config.secondary_label for _, m in self.mounted_scales())
        padding = self.LABEL_PADDING if has_secondary_labels else 0
        if padding != self.config.component_left_padding:
            self.config.component_left_padding = padding
            self.config.update_effective_width()
            self._initialize_canvases()
        self._update_cursor_bounds()

    def _update_cursor_bounds(self):
        cfg, cursor = self.config, self.cursor
        cursor.min_position = cfg.component_left_padding + cfg.buffer_space - cursor.width / 2
        cursor.max_position = cursor.min_position + cfg.effective_width
        if cursor.position < cursor.min_position:
            self.set_cursor_position(cursor.min_position)
        elif cursor.position > cursor.max_position:
            self.set_cursor_position(cursor.max_position)

    def _render_all_scales(self):
        for canvas in self.canvases.values():
            canvas.clear_rect(-1, -1, canvas.width + 2, canvas.height + 2)
        for component, mounted in self.mounted_scales():
            self.renderer_for(component, mounted).render(mounted.scale, clear_canvas=False)

    def _create_scale_labels(self):
        self.scale_labels = []
        for component, mounted in self.mounted_scales():
            cfg = mounted.config
            self.scale_labels.append(ScaleLabel(component, cfg.slot, cfg.name, cfg.orientation))
            if cfg.secondary_label:
                self.scale_labels.append(ScaleLabel(component, cfg.slot, cfg.secondary_label, cfg.orientation,
                                                    is_secondary=True))

    def set_developer_mode(self, enabled: bool):
        with self.lock:
            self.developer_mode = enabled
            if not enabled:
                self.cursor_values = []
            self._update_cursor_values()

    def readouts(self) -> list[tuple[str, float]]:
        """(scale name, value under the hairline) for every mounted scale, in visual order."""
        with self.lock:
            canvas_x = self.cursor.hairline_x - self.config.component_left_padding
            result = []
            for component, mounted in self.mounted_scales():
                x = canvas_x - self.slide_state.position if component == Component.SLIDE else canvas_x
                result.append((mounted.config.name,
                               self._get_scale_value(mounted.scale, x, self.renderer_for(component, mounted))))
            return result

    def _get_scale_value(self, sc: Scale, pixel_position: float, renderer: ScaleRenderer):
        return renderer.value_at(sc, pixel_position, snap=self.config.snap_to_ticks)

    def _update_cursor_values(self):
        if not self.developer_mode:
            return
        self.cursor_values = [(name, 'n/a' if value is None else f'{value:.2f}') for name, value in self.readouts()]

    @property
    def cursor_values_text(self) -> str:
        return '\n'.join(f'{name}: {value}' for name, value in self.cursor_values)

    def get_config(self) -> SlideRuleConfig:
        return replace(self.config)

    def render_image(self) -> Canvas:
        """Composite the strips at the current slide offset, with labels and the cursor, onto one canvas."""
        with self.lock:
            cfg = self.config
            out = Canvas.for_format(self.out_format, cfg.width, cfg.total_h, cfg.pixel_ratio, self.style.bg)
            y_off = 0
            for component in Component:
                x_off = self.slide_state.position if component == Component.SLIDE else 0
                out.paste(self.canvases[component], cfg.component_left_padding + x_off, y_off)
                self._draw_component_labels(out, component, x_off, y_off)
                y_off += cfg.component_h(component)
            self._draw_cursor(out)
            return out

    def _draw_component_labels(self, out: Canvas, component: Component, x_off: float, y_off: float):
        cfg = self.config
        out.fill_style = self.style.ink
        out.font_size = self.style.label_font_size
        for label in self.scale_labels:
            if label.component != component:
                continue
            # Primary names sit in the left buffer, secondary labels in the padding before the strip
            x = x_off + (4 if label.is_secondary else cfg.component_left_padding + 4)
            slot_y = y_off + label.slot * cfg.slot_height
            y = slot_y + (cfg.slot_height * 0.4 if label.orientation == Align.UPPER else cfg.slot_height * 0.8)
            out.fill_text(label.text, x, y)

    def _draw_cursor(self, out: Canvas):
        cursor, total_h = self.cursor, self.config.total_h
        out.line_width = 1
        out.stroke_style = self.style.cursor_edge
        out.begin_path()
        for x in (cursor.position, cursor.position + cursor.width):
            out.move_to(x, 0)
            out.line_to(x, total_h)
        out.stroke()
        out.stroke_style = self.style.cursor
        out.begin_path()
        out.move_to(cursor.hairline_x, 0)
        out.line_to(cursor.hairline_x, total_h)
        out.stroke()
        if self.developer_mode:
            out.fill_style = self.style.cursor
            out.font_size = FontSize.READOUT.value
            for i, (name, value) in enumerate(self.cursor_values):
                out.fill_text(f'{name}: {value}', cursor.hairline_x + 3, FontSize.READOUT.value * (i + 1))


# --------------------------7. Models----------------------------


@dataclass(frozen=True)
class ScaleMount:
    scale: Scale
    options: dict
    """render options: component, slot, name, marks..."""


@dataclass(frozen=True)
class Model:
    """A slide rule setup: construction options, style and the scales to mount."""
    name: str
    options: dict = field(default_factory=dict)
    mounts: tuple[ScaleMount, ...] = ()
    style: Style = Style()
    developer_mode: bool = False

    @classmethod
    def from_dict(cls, model_def: dict):
        options = dict(model_def.get('slide_rule', {}))
        developer_mode = options.pop('developer_mode', False)
        mounts = []
        for mount_def in model_def.get('scales', []):
            mount_def = dict(mount_def)
            if 'scale' not in mount_def:
                raise ValueError(f"Scale mount '{mount_def.get('name')}' has no scale definition")
            mounts.append(ScaleMount(Scale.from_dict(mount_def.pop('scale')), mount_def))
        return cls(name=model_def.get('name'), options=options, mounts=tuple(mounts),
                   style=Style.from_dict(model_def.get('style', {})), developer_mode=developer_mode)

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Model-{example_name}.toml'))

    @classmethod
    def load(cls, model_name):
        return cls.from_toml_file(model_name) if os.path.exists(model_name) else cls.from_example(model_name)

    @classmethod
    def example_names(cls):
        for fn in os.listdir(cls.example_dir_path):
            if match := re.match(r'Model-(.*)\.toml$', fn):
                yield match.group(1)

    def build(self, **overrides) -> SlideRule:
        slide_rule = SlideRule(**{**self.options, **overrides}, style=self.style)
        for mount in self.mounts:
            slide_rule.render(mount.scale, mount.options)
        slide_rule.set_developer_mode(self.developer_mode)
        return slide_rule


# ----------------------8. Commands------------------------------------------


def save_image(img_to_save: Canvas, basename: str, output_suffix=None) -> str:
    output_filename = f"{basename}{'.' + output_suffix if output_suffix else ''}"
    output_full_path = img_to_save.save_as(os.path.abspath(output_filename))
    print(f'Result saved to: file://{output_full_path}')
    return output_full_path


def main():
    """CLI for rendering a slide rule model at a given slide and cursor position."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--model',
                             default='Demo',
                             help=f"Which model: a TOML file or one of {', '.join(sorted(Model.example_names()))}")
    args_parser.add_argument('--format',
                             default=OutFormat.PNG.value,
                             choices=[f.value for f in OutFormat],
                             help='Output format')
    args_parser.add_argument('--slide',
                             type=float, default=0,
                             help='Slide offset in pixels (clamped to the scale length)')
    args_parser.add_argument('--cursor',
                             type=float,
                             help='Cursor position in pixels (clamped to the scales)')
    args_parser.add_argument('--dev',
                             action='store_true',
                             help='Show the cursor readouts on the output')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Log debugging detail')
    cli_args = args_parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if cli_args.debug else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    out_format: OutFormat = next(f for f in OutFormat if f.value == cli_args.format)
    model = Model.load(cli_args.model)

    start_time = time.process_time()
    slide_rule = model.build(out_format=out_format)
    if cli_args.dev:
        slide_rule.set_developer_mode(True)
    slide_rule.set_slide_position(cli_args.slide)
    if cli_args.cursor is not None:
        slide_rule.set_cursor_position(cli_args.cursor)
    for name, value in slide_rule.readouts():
        print(f' {name}: {value:.2f}' if value is not None else f' {name}: n/a')
    sliderule_img = slide_rule.render_image()
    print(f'Slide Rule render finished at: {round(time.process_time() - start_time, 3)} seconds')
    save_image(sliderule_img, f'{model.name or cli_args.model}.SlideRule', cli_args.suffix)


if __name__ == '__main__':
    main()
