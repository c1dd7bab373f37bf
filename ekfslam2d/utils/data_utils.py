"""
Data transformation helpers.

Converts the numeric arrays produced by the estimator and the simulator into
time-indexed pandas DataFrames so that trajectories can be aligned by timestamp.
"""

import pandas as pd


def build_timeseries(data, cols):
    """
    Convert a trajectory array to a pandas DataFrame with datetime index.

    Used for both the estimator history
    (:meth:`ExtendedKalmanFilterSLAM.build_dataframes`) and the simulator ground
    truth (:meth:`Simulation.build_dataframes`), so that
    :func:`ekfslam2d.utils.metrics.compute_ate` can align them with a join on
    the index.

    Parameters
    ----------
    data : ndarray
        Input data array whose first column holds the time in seconds.
    cols : list of str
        Column names for the DataFrame. First column should be 'stamp'.

    Returns
    -------
    pandas.DataFrame
        Time-indexed DataFrame with the remaining columns.

    Examples
    --------
    >>> import numpy as np
    >>> from ekfslam2d.utils.data_utils import build_timeseries
    >>>
    >>> # [time, x, y, theta] from a simulated run starting at t = 0
    >>> data = np.array([
    ...     [0.0, 0.0, 0.0, 0.0],
    ...     [0.1, 0.1, 0.0, 0.01],
    ... ])
    >>> df = build_timeseries(data, cols=['stamp', 'x', 'y', 'theta'])

    Notes
    -----
    Simulated time starts at zero, so the index starts at the Unix epoch
    (1970-01-01 00:00:00). Only differences between timestamps are meaningful.
    The estimator and the simulator accumulate the same ``delta_time`` values in
    the same order, so their timestamps compare equal without tolerance. The
    estimator history holds one row per timestamp, taken after that tick's
    corrections.
    """
    timeseries = pd.DataFrame(data, columns=cols)
    timeseries["stamp"] = pd.to_datetime(timeseries["stamp"], unit="s")
    timeseries = timeseries.set_index("stamp")
    return timeseries
