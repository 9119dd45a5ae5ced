"""Assembly of decoded events into photon count images."""

import numpy as np
from numba import njit
from numba_progress import ProgressBar

from .records import DEFAULT_MARKERS


@njit
def _bin_photons(sync, dtime, channel, marker, line_start, line_stop, frame,
                 sync_per_line, select_channel, counts, progress_proxy):
    num_pixel_X, num_pixel_Y, num_tcspc_channel = counts.shape

    # Initialize Variable
    currentLine = 0
    syncStart = 0
    insideLine = False

    for event in range(sync.size):
        progress_proxy.update(1)
        special_event = marker[event]

        if special_event != 0:
            if special_event & frame:
                currentLine = 0
                insideLine = False
            if special_event & line_start:
                insideLine = True
                syncStart = sync[event]
            elif special_event & line_stop:
                insideLine = False
                currentLine += 1
                if currentLine >= num_pixel_Y:
                    currentLine = 0
            continue

        if not insideLine:
            continue
        if select_channel >= 0 and channel[event] != select_channel:
            continue
        currentPixel = ((sync[event] - syncStart) * num_pixel_X) // sync_per_line
        tmptcspc = dtime[event]
        if 0 <= currentPixel < num_pixel_X and tmptcspc < num_tcspc_channel:
            counts[currentPixel, currentLine, tmptcspc] += 1


def events_to_counts(decoded, width, height, n_bins=None, markers=DEFAULT_MARKERS, channel=None,
                     progress=True):
    """Histogram decoded events into a photon count cuboid.

    The pixel of a photon is given by its sync time relative to the last
    line start marker, with the line duration taken as the mean distance
    between line start and line stop markers. Frames are summed.

    :param decoded: Dict of arrays as returned by records.decode_t3records
    :param width: Number of pixels per line
    :param height: Number of lines per frame
    :param n_bins: Number of lifetime bins, by default the largest photon dtime + 1
    :param markers: MarkerBits of the file
    :param channel: Only count photons of this detector channel, all when None
    :param progress: Show a progress bar
    :return counts: uint32 array of dimension (width, height, n_bins)
    """
    sync = np.asarray(decoded['sync'], dtype=np.int64)
    dtime = np.asarray(decoded['dtime'], dtype=np.int64)
    chan = np.asarray(decoded['channel'], dtype=np.int64)
    marker = np.asarray(decoded['marker'], dtype=np.int64)

    photons = marker == 0
    if n_bins is None:
        n_bins = int(dtime[photons].max()) + 1 if photons.any() else 1
    counts = np.zeros((width, height, n_bins), dtype=np.uint32)

    L1 = sync[(marker & markers.line_start) != 0]  # Get Line start marker sync values
    L2 = sync[(marker & markers.line_stop) != 0]  # Get Line stop marker sync values
    num_lines = min(L1.size, L2.size)
    if num_lines == 0:
        return counts
    sync_per_line = int(np.floor(np.mean(L2[:num_lines] - L1[:num_lines])))
    if sync_per_line <= 0:
        raise ValueError("Line stop markers do not follow line start markers")

    with ProgressBar(total=len(sync), disable=not progress) as progress_proxy:
        _bin_photons(sync, dtime, chan, marker, markers.line_start, markers.line_stop,
                     markers.frame, sync_per_line, -1 if channel is None else channel,
                     counts, progress_proxy)
    return counts


def intensity_image(counts):
    """Sum a count cuboid over its lifetime bins."""
    return counts.sum(axis=-1)
