#!/usr/bin/env python3
"""
cpuidscan.py – show the CPUID features and instruction encodings used by x86/x64 binaries.

$ ./cpuidscan.py path/to/binary
$ ./cpuidscan.py -ioc% path/to/binary                 # per-instruction detail
$ ./cpuidscan.py -i --cpuid AVX2,AVX512F path/to/binary

It assumes all bytes inside the code sections are code. This isn't always true.
If you see some weird instructions, it's probably data that was decoded as instructions.

Requires: iced-x86, lief, Python ≥3.9
"""

from __future__ import annotations
import argparse, io, logging, mmap, sys
from collections import Counter, defaultdict
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple

import lief
from iced_x86 import CpuidFeature, Decoder, DecoderOptions, Instruction, OpCodeInfo

logger = logging.getLogger(__name__)

# ─────────────────────────  Feature tables  ────────────────────────────────────
# Features every x86 CPU the tool cares about has; hidden unless --all is given.
BASELINE_FEATURES: frozenset[str] = frozenset(
    {
        "INTEL8086",
        "INTEL8086_ONLY",
        "INTEL186",
        "INTEL286",
        "INTEL286_ONLY",
        "INTEL386",
        "INTEL386_ONLY",
        "INTEL386_A0_ONLY",
        "INTEL486",
        "INTEL486_A_ONLY",
        "X64",
        "CPUID",
        "FPU",
        "FPU287",
        "FPU287XL_ONLY",
        "FPU387",
        "FPU387SL_ONLY",
        "MULTIBYTENOP",
        "PAUSE",
        "RDPMC",
        "SMM",
    }
)

GROUP_SEPARATOR = " and "
COLUMN_SEPARATOR = " | "


def _constant_names(namespace) -> dict[int, str]:
    """Map the integer constants of an iced_x86 enum (module or IntEnum) to their names."""
    names: dict[int, str] = {}
    for name in dir(namespace):
        value = getattr(namespace, name)
        if name.isupper() and isinstance(value, int):
            names.setdefault(int(value), name)
    return names


CPUID_FEATURE_NAMES: dict[int, str] = _constant_names(CpuidFeature)


# ─────────────────────────────  Records  ───────────────────────────────────────
class OpcodeIdentity(NamedTuple):
    """One distinct instruction encoding, e.g. ``VADDPS ymm1, ymm2, ymm3/m256``."""

    code: int
    instruction: str
    opcode: str

    def sort_key(self) -> tuple[str, str, int]:
        return (self.instruction, self.opcode, self.code)


class InstructionRecord(NamedTuple):
    opcode: OpcodeIdentity
    features: tuple[str, ...]


class OpcodeStat(NamedTuple):
    opcode: OpcodeIdentity
    count: int


@lru_cache(maxsize=None)
def describe_code(code: int) -> OpcodeIdentity:
    info = OpCodeInfo(code)
    return OpcodeIdentity(code, info.instruction_string, info.op_code_string)


@lru_cache(maxsize=None)
def feature_names(features: tuple[int, ...]) -> tuple[str, ...]:
    return tuple(CPUID_FEATURE_NAMES.get(f, str(f)) for f in features)


# ─────────────────────────  Container reader  ──────────────────────────────────
class ScanError(Exception):
    """Any failure to obtain the bytes to decode; fatal for the run."""


class InputError(ScanError):
    pass


class ContainerError(ScanError):
    pass


class SectionError(ScanError):
    pass


class CodeSection(NamedTuple):
    name: str
    index: int
    address: int
    bitness: int
    data: bytes


# Raw header/section constants; lief's enum spellings move between releases.
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B
IMAGE_SCN_CNT_CODE = 0x00000020
MH_MAGIC_64, MH_CIGAM_64 = 0xFEEDFACF, 0xCFFAEDFE
S_ATTR_PURE_INSTRUCTIONS = 0x80000000
S_ATTR_SOME_INSTRUCTIONS = 0x00000400


def _bitness(binary, path: Path) -> int:
    if isinstance(binary, lief.ELF.Binary):
        return 64 if binary.header.identity_class == lief.ELF.Header.CLASS.ELF64 else 32
    if isinstance(binary, lief.PE.Binary):
        return 64 if int(binary.optional_header.magic) == IMAGE_NT_OPTIONAL_HDR64_MAGIC else 32
    if isinstance(binary, lief.COFF.Binary):
        return 64 if int(binary.header.machine) == IMAGE_FILE_MACHINE_AMD64 else 32
    if isinstance(binary, lief.MachO.Binary):
        return 64 if int(binary.header.magic) in (MH_MAGIC_64, MH_CIGAM_64) else 32
    raise ContainerError(f"Couldn't read `{path}`: unsupported container {type(binary).__module__}")


def _is_code(binary, section) -> bool:
    if isinstance(binary, lief.ELF.Binary):
        return section.type == lief.ELF.Section.TYPE.PROGBITS and section.has(
            lief.ELF.Section.FLAGS.EXECINSTR
        )
    if isinstance(binary, (lief.PE.Binary, lief.COFF.Binary)):
        return bool(int(section.characteristics) & IMAGE_SCN_CNT_CODE)
    # Mach-O
    return bool(int(section.flags) & (S_ATTR_PURE_INSTRUCTIONS | S_ATTR_SOME_INSTRUCTIONS))


def _section_address(binary, section) -> int:
    if isinstance(binary, lief.PE.Binary):
        return binary.optional_header.imagebase + section.virtual_address
    return section.virtual_address


def iter_code_sections(path: Path) -> Iterator[CodeSection]:
    """Yield the executable sections of *path* in file order (raises ScanError)."""
    try:
        f = open(path, "rb")
    except OSError as e:
        raise InputError(f"Couldn't open `{path}`: {e.strerror or e}") from e
    with f:
        if f.seek(0, io.SEEK_END) == 0:
            raise ContainerError(f"Couldn't read `{path}`: empty file")
        try:
            mapped = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
        except OSError as e:
            raise InputError(f"Couldn't map `{path}`: {e.strerror or e}") from e
        with mapped:
            binary = lief.parse(str(path))
            if binary is None:
                raise ContainerError(f"Couldn't read `{path}`: unrecognized or malformed binary")

            bitness = _bitness(binary, path)
            logger.debug("%s: %s, %d-bit", path, type(binary).__module__.rsplit(".", 1)[-1], bitness)

            for index, section in enumerate(binary.sections):
                if not _is_code(binary, section):
                    continue
                start, end = section.offset, section.offset + section.size
                if end > len(mapped):
                    raise SectionError(
                        f"Couldn't get section data, section `{section.name}` index {index} "
                        f"of `{path}`: range {start:#x}..{end:#x} is past end of file"
                    )
                yield CodeSection(
                    section.name,
                    index,
                    _section_address(binary, section),
                    bitness,
                    mapped[start:end],
                )


# ─────────────────────────  Record source  ─────────────────────────────────────
def decode_records(data: bytes, bitness: int, ip: int = 0, mpx: bool = False) -> Iterator[InstructionRecord]:
    """Decode every byte of *data* as instructions, one record per instruction."""
    options = DecoderOptions.MPX if mpx else DecoderOptions.NONE
    decoder = Decoder(bitness, data, options, ip=ip)
    instr = Instruction()
    while decoder.can_decode:
        decoder.decode_out(instr)
        yield InstructionRecord(describe_code(instr.code), feature_names(tuple(instr.cpuid_features())))


def scan_binary(path: Path, mpx: bool = False) -> Iterator[InstructionRecord]:
    for section in iter_code_sections(path):
        logger.debug(
            "decoding section %s (index %d) at %#x, %d bytes",
            section.name,
            section.index,
            section.address,
            len(section.data),
        )
        yield from decode_records(section.data, section.bitness, section.address, mpx)


# ─────────────────────────────  Aggregation  ───────────────────────────────────
@dataclass
class DisplayGroup:
    name: str
    features: tuple[str, ...]
    counts: Counter

    def stats(self) -> list[OpcodeStat]:
        """Opcode stats ordered by instruction text, opcode text, then code."""
        return [
            OpcodeStat(op, n)
            for op, n in sorted(self.counts.items(), key=lambda kv: kv[0].sort_key())
        ]


class FeatureAggregator:
    """
    Per-opcode occurrence counts keyed by CPUID feature.

    Single-feature keys are plain feature names; keys for instructions that
    need several features at once are tuples of two or more names, so the two
    maps can never collide.
    """

    def __init__(self) -> None:
        self.single: dict[str, Counter] = defaultdict(Counter)
        self.combined: dict[tuple[str, ...], Counter] = defaultdict(Counter)
        self.total = 0

    def ingest(self, record: InstructionRecord, fan_out: bool) -> None:
        self.total += 1
        features = record.features
        if fan_out:
            # Only feature names are shown, so don't show 'xx and yy'
            for feature in features:
                self.single[feature][record.opcode] += 1
        elif len(features) == 1:
            self.single[features[0]][record.opcode] += 1
        elif features:
            self.combined[features][record.opcode] += 1

    def groups(self) -> list[DisplayGroup]:
        """Every key with at least one stat; ordering is left to format_report."""
        groups = [
            DisplayGroup(GROUP_SEPARATOR.join(key), key, counts)
            for key, counts in self.combined.items()
            if counts
        ]
        groups.extend(
            DisplayGroup(feature, (feature,), counts)
            for feature, counts in self.single.items()
            if counts
        )
        return groups


def aggregate(records: Iterable[InstructionRecord], fan_out: bool) -> FeatureAggregator:
    agg = FeatureAggregator()
    for record in records:
        agg.ingest(record, fan_out)
    logger.debug(
        "%d instructions, %d single-feature and %d combined keys",
        agg.total,
        len(agg.single),
        len(agg.combined),
    )
    return agg


# ─────────────────────────────  Filtering  ─────────────────────────────────────
def parse_cpuid_list(text: str | None) -> list[str]:
    """Split a ','-separated option value; blanks are dropped."""
    if not text:
        return []
    return [s.strip() for s in text.split(",") if s.strip()]


def is_baseline(group: DisplayGroup) -> bool:
    return len(group.features) == 1 and group.features[0] in BASELINE_FEATURES


def filter_groups(
    groups: Iterable[DisplayGroup],
    include_baseline: bool = False,
    cpuid: Iterable[str] = (),
    ignore_cpuid: Iterable[str] = (),
) -> list[DisplayGroup]:
    """Apply baseline, --cpuid and --ignore-cpuid filtering. Matches whole strings."""
    wanted, ignored = set(cpuid), set(ignore_cpuid)
    kept = []
    for group in groups:
        if not include_baseline and is_baseline(group):
            continue
        if wanted and group.name not in wanted:
            continue
        if ignored and group.name in ignored:
            continue
        kept.append(group)
    return kept


# ─────────────────────────────  Formatting  ────────────────────────────────────
@dataclass(frozen=True)
class ReportColumns:
    percent: bool = False
    count: bool = False
    opcode: bool = False
    instr: bool = False

    @property
    def detailed(self) -> bool:
        return self.opcode or self.instr


def format_stat(stat: OpcodeStat, total: int, columns: ReportColumns) -> str:
    cells = []
    if columns.percent:
        cells.append(f"{stat.count / total * 100:.2f}%")
    if columns.count:
        cells.append(str(stat.count))
    if columns.opcode:
        cells.append(stat.opcode.opcode)
    if columns.instr:
        cells.append(stat.opcode.instruction)
    return COLUMN_SEPARATOR.join(cells)


def format_report(groups: Iterable[DisplayGroup], total: int, columns: ReportColumns) -> Iterator[str]:
    for group in sorted(groups, key=lambda g: g.name):
        yield group.name
        if columns.detailed:
            for stat in group.stats():
                yield "\t" + format_stat(stat, total, columns)


def build_report(
    records: Iterable[InstructionRecord],
    columns: ReportColumns = ReportColumns(),
    include_baseline: bool = False,
    cpuid: Iterable[str] = (),
    ignore_cpuid: Iterable[str] = (),
) -> list[str]:
    """Aggregate *records* and return the report lines."""
    agg = aggregate(records, fan_out=not columns.detailed)
    groups = filter_groups(agg.groups(), include_baseline, cpuid, ignore_cpuid)
    return list(format_report(groups, agg.total, columns))


# ─────────────────────────────  CLI / I/O  ─────────────────────────────────────
def parse_args(argv: list[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="cpuidscan",
        description="Shows CPUID features and instruction encodings used by x86/x64 binaries.",
        epilog=(
            "It assumes all bytes inside the code sections are code. "
            "If you see some weird instructions, it's probably data that was decoded as instructions."
        ),
    )
    ap.add_argument("filename", type=Path, help="the executable to decode")
    ap.add_argument("--mpx", action="store_true", help="decode MPX instructions")
    ap.add_argument(
        "-a",
        "--all",
        action="store_true",
        help="include all instructions even if they don't have a CPUID feature bit",
    )
    ap.add_argument("-i", "--instr", action="store_true", help="show instructions")
    ap.add_argument("-o", "--opcode", action="store_true", help="show opcodes")
    ap.add_argument(
        "-c",
        "--count",
        action="store_true",
        help="show instruction count (requires --instr or --opcode)",
    )
    ap.add_argument(
        "-%",
        "--percent",
        action="store_true",
        help="show how often an instruction is used (%%) (requires --instr or --opcode)",
    )
    ap.add_argument(
        "--cpuid",
        metavar="LIST",
        help="show only these CPUID features (','-separated); matches whole strings",
    )
    ap.add_argument(
        "--ignore-cpuid",
        metavar="LIST",
        help="ignore these CPUID features (','-separated); matches whole strings",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    return ap.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )
    lief.logging.set_level(lief.logging.LEVEL.ERROR)

    columns = ReportColumns(
        percent=args.percent, count=args.count, opcode=args.opcode, instr=args.instr
    )
    try:
        lines = build_report(
            scan_binary(args.filename, mpx=args.mpx),
            columns,
            include_baseline=args.all,
            cpuid=parse_cpuid_list(args.cpuid),
            ignore_cpuid=parse_cpuid_list(args.ignore_cpuid),
        )
    except ScanError as e:
        sys.exit(f"[error] {e}")

    for line in lines:
        print(line)


if __name__ == "__main__":
    main()
