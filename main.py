"""
Chromatic aberration pipeline: calibration → dispersion model → correction → evaluation

Commands (one YAML config each, see configs/):
  raytrace-psf         PSFs of point lights through a thick biconvex lens
  disk-dispersion-sim  spectral dispersion model from ray-traced PSF centres
  raw-disk-dispersion  colour-channel dispersion model from a RAW disk chart
  sensor-map           Sony ICX655 colour map and latent-band sampling weights
  grid-search          regularization weight search (Song et al. 2016) on one patch
  synthetic-dataset    spectral and colour ground-truth images for run-dataset
  run-dataset          evaluate ADMM / demosaicking algorithms over a dataset

Run from the repo root after `pip install -e .`:
  python main.py sensor-map --outdir outputs/sensor
  python main.py raw-disk-dispersion --config configs/raw_disk_dispersion.yaml
  python main.py grid-search --config configs/grid_search.yaml --verbose
"""

import argparse
import logging
from pathlib import Path

from aberration_pipeline.config import load_config
from aberration_pipeline.workflows import WORKFLOWS


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Chromatic aberration calibration and correction pipeline")
    p.add_argument("command", choices=sorted(WORKFLOWS), help="workflow to run")
    p.add_argument("--config", default=None, help="YAML config file (defaults are used when omitted)")
    p.add_argument("--outdir", default=None, help="output directory (default: outputs/<command>)")
    p.add_argument("--verbose", action="store_true", help="debug-level logging")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.config is None:
        print(f"[WARN] No --config given; running '{args.command}' with default parameters.")
    config = load_config(args.config, args.command)
    outdir = Path(args.outdir or Path("outputs") / args.command)
    outdir.mkdir(parents=True, exist_ok=True)

    result = WORKFLOWS[args.command](config, outdir)

    print(f"[OK] Saved outputs to: {outdir.resolve()}")
    for key, value in result.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
