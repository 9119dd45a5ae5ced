"""Command line conversion between TIFF count stacks and PicoQuant TTTR files."""

import argparse
import sys

import numpy as np
import tifffile

from . import __version__
from .errors import PtuError
from .header import print_tags
from .pqreader import load_ptfile, read_ptu
from .pqwriter import DEFAULT_RESOLUTION, DEFAULT_SYNC_RATE, write_ptu


def tiff_to_ptu(tiff_path, ptu_path=None, **settings):
    """Convert a TIFF stack of photon counts (Z = lifetime bin, Y, X) to a .ptu file.

    :param tiff_path: Input TIFF file, 8- or 16-bit integer pixels
    :param ptu_path: Output filename, defaults to `<tiff_path>_conv.ptu`
    :param settings: Keyword arguments of pqwriter.write_ptu
    :return ptu_path, num_records:
    """
    stack = tifffile.imread(tiff_path)
    if stack.dtype not in (np.uint8, np.uint16, np.int8, np.int16):
        raise ValueError("Only 8- and 16-bit input images are supported!")
    if stack.ndim == 2:
        stack = stack[np.newaxis]
    if stack.ndim != 3:
        raise ValueError("Expected a (lifetime, y, x) stack, got shape %s" % (stack.shape,))
    if ptu_path is None:
        ptu_path = str(tiff_path) + '_conv.ptu'
    num_records = write_ptu(stack.transpose(2, 1, 0), ptu_path, **settings)
    return ptu_path, num_records


def ptu_to_tiff(pt_path, tiff_path=None, n_bins=None, channel=None):
    """Decode a .ptu or .pt3 scan into a TIFF count stack (Z = lifetime bin, Y, X)."""
    counts, _ = load_ptfile(str(pt_path), n_bins=n_bins, channel=channel)
    if tiff_path is None:
        tiff_path = str(pt_path) + '_counts.tif'
    stack = counts.transpose(2, 1, 0)
    if stack.size == 0 or stack.max() <= np.iinfo(np.uint16).max:
        stack = stack.astype(np.uint16)
    tifffile.imwrite(tiff_path, stack)
    return tiff_path


def _build_parser():
    parser = argparse.ArgumentParser(prog='pqtttr', description=__doc__)
    parser.add_argument('--version', action='version', version='%(prog)s ' + __version__)
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('tiff2ptu', help='write a TIFF count stack as a .ptu file')
    p.add_argument('input')
    p.add_argument('output', nargs='?')
    p.add_argument('--sync-rate', type=int, default=DEFAULT_SYNC_RATE,
                   help='laser repetition rate in Hz (default: %(default)s)')
    p.add_argument('--resolution', type=float, default=DEFAULT_RESOLUTION * 1e12,
                   help='TCSPC bin width in ps (default: %(default)s)')
    p.add_argument('--pixel-resolution', type=float, default=1.0,
                   help='pixel size in um (default: %(default)s)')
    p.add_argument('--channel', type=int, default=1)

    p = sub.add_parser('ptu2tiff', help='decode a .ptu or .pt3 scan into a TIFF count stack')
    p.add_argument('input')
    p.add_argument('output', nargs='?')
    p.add_argument('--bins', type=int, default=None, help='number of lifetime bins')
    p.add_argument('--channel', type=int, default=None)

    p = sub.add_parser('info', help='print the header tags of a .ptu file')
    p.add_argument('input')
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    try:
        if args.command == 'tiff2ptu':
            path, num_records = tiff_to_ptu(args.input, args.output,
                                            sync_rate=args.sync_rate,
                                            resolution=args.resolution * 1e-12,
                                            pixel_resolution=args.pixel_resolution,
                                            channel=args.channel)
            print("Wrote %d records to %s" % (num_records, path))
        elif args.command == 'ptu2tiff':
            path = ptu_to_tiff(args.input, args.output, args.bins, args.channel)
            print("Wrote %s" % path)
        else:
            records, header = read_ptu(args.input)
            print_tags(header)
            fmt = header.record_format
            print("Record type: %s, %d records"
                  % (fmt.record_type if fmt else 'T2 (not decoded)', records.size))
    except (PtuError, ValueError, OSError) as e:
        print("pqtttr: error: %s" % e, file=sys.stderr)
        return 1
    return 0
