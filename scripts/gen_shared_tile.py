#!/usr/bin/env python3
"""Generate shared tile buffer and barrier unit Verilog from simtgemm."""

import argparse
import sys
from pathlib import Path

# Add src to path if running from scripts/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from amaranth.back import verilog  # noqa: E402

from simtgemm.barrier import BarrierUnit  # noqa: E402
from simtgemm.config import SUPPORTED_BLOCK_SIZES, DeviceConfig  # noqa: E402
from simtgemm.shared_tile import SharedTileBuffer  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--block-size", type=int, choices=SUPPORTED_BLOCK_SIZES, default=32,
        help="Tile edge (default: 32)",
    )
    args = parser.parse_args()

    gen_dir = project_root / "gen"
    gen_dir.mkdir(exist_ok=True)

    config = DeviceConfig()
    num_warps = -(-args.block_size * args.block_size // config.warp_size)

    designs = (
        (SharedTileBuffer(args.block_size), f"SharedTileBuffer{args.block_size}"),
        (BarrierUnit(num_warps), f"BarrierUnit{num_warps}"),
    )
    for design, name in designs:
        output_path = gen_dir / f"{name.lower()}.v"
        with open(output_path, "w") as f:
            f.write(verilog.convert(design, name=name))
        print(f"Generated {output_path}")


if __name__ == "__main__":
    main()
