"""
Command-line benchmark for the tiled matrix multiply.

Usage:
    simtgemm [-device=n] [-wA=WidthA] [-hA=HeightA] [-wB=WidthB] [-hB=HeightB]
             [--block-size {16,32}] [--iterations N] [--mapping MAPPING]
             [--warp-policy POLICY] [--grid-order ORDER] [--workers N]
             [--seed N] [--racecheck] [--verbose]

Exit status is 0 when the result check passes. Any other outcome exits with 1,
including a rejected command-line argument.
"""

import argparse
import dataclasses
import logging
import sys
from argparse import ArgumentParser, Namespace

from .config import (
    DEVICE_CONFIGS,
    SUPPORTED_BLOCK_SIZES,
    DeviceConfig,
    GridOrder,
    MatrixMulConfig,
    SchedulingPolicy,
    TileMapping,
    get_device_config,
)
from .errors import SimtGemmError
from .host import HostOrchestrator
from .memory import Dim3
from .runtime import DeviceContext

DEFAULT_DIM = 5 * 2 * 32
"""Default edge of both matrices (320)."""

WARP_POLICIES = {
    "round-robin": SchedulingPolicy.ROUND_ROBIN,
    "gto": SchedulingPolicy.GREEDY_THEN_OLDEST,
    "random": SchedulingPolicy.RANDOM,
}

GRID_ORDERS = {
    "row-major": GridOrder.ROW_MAJOR,
    "reversed": GridOrder.REVERSED,
    "shuffled": GridOrder.SHUFFLED,
}

MAPPINGS = {
    "reference": TileMapping.REFERENCE,
    "canonical": TileMapping.CANONICAL,
}


def positive_int(text: str) -> int:
    """argparse type: an integer greater than zero."""
    value = int(text)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"{text} is not a positive integer")
    return value


def add_matrix_args(parser: ArgumentParser, *, default_dim: int = DEFAULT_DIM) -> None:
    """
    Add matrix dimension arguments to a parser.

    Adds these arguments:
        -wA=W -hA=H   Width x Height of matrix A
        -wB=W -hB=H   Width x Height of matrix B
    """
    group = parser.add_argument_group("Matrix Dimensions")
    for flag, help_text in (
        ("-wA", "Width of matrix A"),
        ("-hA", "Height of matrix A"),
        ("-wB", "Width of matrix B"),
        ("-hB", "Height of matrix B"),
    ):
        group.add_argument(
            flag,
            dest=flag[1:],
            type=positive_int,
            default=default_dim,
            metavar="N",
            help=f"{help_text} (default: {default_dim})",
        )


def add_device_args(parser: ArgumentParser) -> None:
    """
    Add device and kernel selection arguments to a parser.

    Adds these arguments:
        -device=n             Simulated device index
        --block-size {16,32}  Tile size
        --iterations N        Timed kernel invocations
        --mapping MAPPING     Thread-to-tile-cell mapping
    """
    group = parser.add_argument_group("Device and Kernel")
    names = ", ".join(f"{i}={cfg.name}" for i, cfg in enumerate(DEVICE_CONFIGS))
    group.add_argument(
        "-device",
        type=int,
        default=0,
        metavar="n",
        help=f"Device index ({names}; default: 0)",
    )
    group.add_argument(
        "--block-size",
        type=int,
        choices=SUPPORTED_BLOCK_SIZES,
        default=32,
        help="Tile and thread block edge (default: 32)",
    )
    group.add_argument(
        "--iterations",
        type=positive_int,
        default=300,
        metavar="N",
        help="Timed kernel invocations after the warm-up (default: 300)",
    )
    group.add_argument(
        "--mapping",
        choices=list(MAPPINGS),
        default="reference",
        help="Thread-to-tile-cell mapping (default: reference)",
    )


def add_simulation_args(parser: ArgumentParser) -> None:
    """
    Add scheduling and checking arguments to a parser.

    Adds these arguments:
        --warp-policy POLICY  Warp scheduling inside a block
        --grid-order ORDER    Block dispatch order
        --workers N           Concurrent blocks (multiprocessors)
        --seed N              Seed for random policies
        --racecheck           Fail on shared memory races
        --verbose             Debug logging
    """
    group = parser.add_argument_group("Simulation")
    group.add_argument(
        "--warp-policy",
        choices=list(WARP_POLICIES),
        default="round-robin",
        help="Warp scheduling policy (default: round-robin)",
    )
    group.add_argument(
        "--grid-order",
        choices=list(GRID_ORDERS),
        default="row-major",
        help="Thread block dispatch order (default: row-major)",
    )
    group.add_argument(
        "--workers",
        type=positive_int,
        default=None,
        metavar="N",
        help="Concurrent thread blocks (default: the device's SM count)",
    )
    group.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Seed for random warp policy and shuffled grid order (default: 0)",
    )
    group.add_argument(
        "--racecheck",
        action="store_true",
        help="Track shared memory accesses and fail on races",
    )
    group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )


class BenchmarkArgumentParser(ArgumentParser):
    """ArgumentParser whose usage errors exit with status 1 instead of 2."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> ArgumentParser:
    """Build the argument parser."""
    parser = BenchmarkArgumentParser(
        prog="simtgemm",
        description="Tiled shared-memory matrix multiply on a simulated SIMT device. "
        "Note: outer matrix dimensions of A & B matrices must be equal.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-help", "-?", "--help", action="help", help="Show this message and exit"
    )
    add_matrix_args(parser)
    add_device_args(parser)
    add_simulation_args(parser)
    return parser


def device_config_from_args(args: Namespace) -> DeviceConfig:
    """Device configuration selected by -device, with simulation overrides."""
    base = get_device_config(args.device)
    return dataclasses.replace(
        base,
        num_sms=args.workers or base.num_sms,
        warp_policy=WARP_POLICIES[args.warp_policy],
        grid_order=GRID_ORDERS[args.grid_order],
        seed=args.seed,
        racecheck=args.racecheck,
    )


def main(argv: list[str] | None = None) -> int:
    """
    Run the benchmark.

    Returns:
        Process exit status
    """
    print("[Matrix Multiply Using Simulated SIMT Device] - Starting...")
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s: %(message)s"
        )

    dims_a = Dim3(args.wA, args.hA)
    dims_b = Dim3(args.wB, args.hB)
    if dims_a.x != dims_b.y:
        print(f"Error: outer matrix dimensions must be equal. ({dims_a.x} != {dims_b.y})")
        return 1

    print(f"MatrixA({dims_a.x},{dims_a.y}), MatrixB({dims_b.x},{dims_b.y})")

    try:
        device = device_config_from_args(args)
        config = MatrixMulConfig(
            block_size=args.block_size,
            iterations=args.iterations,
            mapping=MAPPINGS[args.mapping],
        )
        with DeviceContext(device, device_id=args.device) as ctx:
            print(f"Computing result using {device.name}...")
            result = HostOrchestrator(ctx, config).run(dims_a, dims_b)
    except (SimtGemmError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print("done")
    print(result.performance)
    if result.timing.statistics is not None:
        stats = result.timing.statistics
        print(
            f"Launch: {stats.blocks} blocks, {stats.warps} warps, {stats.barriers} barriers, "
            f"{stats.shared_reads + stats.shared_writes} shared accesses, "
            f"{stats.bank_conflicts} bank-conflict replays"
        )

    print("Checking computed result for correctness: ", end="")
    if result.validation.violations:
        print()
    for violation in result.validation.violations:
        print(violation)
    print(result.validation)

    print(
        "\nNOTE: The simulated device is not meant for performance measurements; "
        "timings reflect the simulator, not hardware."
    )
    return 0 if result.passed else 1


if __name__ == "__main__":
    sys.exit(main())
