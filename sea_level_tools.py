"""
Plotting helpers for the sea-level trend report.

Holds the centered rolling mean, the OLS reference line and the figure
writer used by sea_level_analysis. Figures are drawn through the pyplot
state machine and always closed after saving.
"""
import sys
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy.stats import linregress

DAY_ZERO = pd.Timestamp('1970-01-01')
ANNOTATION_XY: tuple[float, float] = (0.02, 0.95)
FIGURE_SIZE: tuple[float, float] = (12, 6)
UNVERIFIED_COLUMN = 'Unverified'
SUPPORTED_FORMATS = ('png', 'svg', 'pdf')
# Vector backends stamp the creation date unless told otherwise
SAVE_METADATA = {
    'png': None,
    'svg': {'Date': None},
    'pdf': {'CreationDate': None},
}
SVG_HASH_SALT = 'sea-level-report'


class RenderError(RuntimeError):
    """Raised when a figure cannot be drawn or written."""


def dates_to_days(dates) -> np.ndarray:
    """Days elapsed since 1970-01-01 for each date, as floats."""
    elapsed = pd.to_datetime(pd.Series(dates)) - DAY_ZERO
    return np.asarray(elapsed / pd.Timedelta(days=1), dtype=float)


def safe_filename(title):
    filename = "".join(c if c.isalnum() or c in (' ', '.', '_', '-') else '_' for c in title)
    return filename.strip().replace(' ', '_')


def rolling_mean(series: pd.Series, window: int, min_periods: int | None = None) -> pd.Series:
    """Centered moving average over `window` consecutive months.

    The first and last ``window // 2`` positions never receive a value, so a
    smoothed point is always backed by a full window. For even windows pandas
    centres the window one step to the left; trimming both ends by the same
    amount keeps the missing stretch symmetric.

    If the index is a DatetimeIndex the series is first laid onto a complete
    monthly calendar, so absent months are gaps inside the window rather
    than being skipped over. By default any gap inside a window leaves that
    position missing.

    Args:
        series (pd.Series): Monthly values in chronological order.
        window (int): Window length in months.
        min_periods (int | None): Non-missing values needed inside a window.
            Defaults to ``window``.

    Returns:
        pd.Series: Smoothed values aligned to ``series.index``.

    Raises:
        ValueError: If window or min_periods is out of range.
    """
    if window < 1:
        raise ValueError(f"Rolling window must be at least 1 month, got {window}.")
    if min_periods is None:
        min_periods = window
    if not 1 <= min_periods <= window:
        raise ValueError(
            f"min_periods must be between 1 and the window ({window}), got {min_periods}."
        )

    values = series.astype(float)
    if isinstance(series.index, pd.DatetimeIndex) and not series.empty:
        calendar = pd.date_range(
            series.index.min(), series.index.max(), freq=pd.DateOffset(months=1)
        )
        values = values.reindex(calendar)

    smoothed = values.rolling(window, center=True, min_periods=min_periods).mean()
    half = window // 2
    if half:
        smoothed.iloc[:half] = np.nan
        smoothed.iloc[-half:] = np.nan

    return smoothed.reindex(series.index)


def trend_line(dates, values) -> np.ndarray:
    """Ordinary least squares line through the non-missing points, evaluated at every date."""
    x = dates_to_days(dates)
    y = np.asarray(values, dtype=float)
    valid = np.isfinite(y)
    if valid.sum() < 2:
        print("Warning: fewer than two valid points, trend line not drawn.", file=sys.stderr)
        return np.full_like(x, np.nan)
    fit = linregress(x[valid], y[valid])
    return fit.intercept + fit.slope * x


def plot_trend_figure(data, annotation, column, window, output_path,
                      formats=('png',), ylabel="Sea Level (ft)", title="Monthly Mean Sea Level",
                      font_family=None, annotation_xy=ANNOTATION_XY):
    """Draws one rate-annotated time-series chart and writes it once per format.

    `output_path` is the path without extension; each format adds its own.
    Returns the list of written paths. Any drawing or writing failure raises
    RenderError.
    """
    if data.empty or column not in data.columns or data[column].isnull().all():
        raise RenderError(f"No '{column}' values to plot for {output_path}.")
    unknown = [ext for ext in formats if ext not in SUPPORTED_FORMATS]
    if unknown:
        raise RenderError(f"Unsupported image format(s): {', '.join(unknown)}.")

    dates = pd.DatetimeIndex(data['Date'])
    values = data[column].to_numpy(dtype=float)
    smoothed = rolling_mean(pd.Series(values, index=dates), window)

    rc = {'svg.hashsalt': SVG_HASH_SALT}
    if font_family:
        rc['font.family'] = font_family

    written = []
    with plt.rc_context(rc):
        fig = plt.figure(figsize=FIGURE_SIZE)
        try:
            plt.plot(dates, values, label='Monthly mean', color='steelblue', linewidth=0.8)
            if UNVERIFIED_COLUMN in data.columns:
                unverified = data[UNVERIFIED_COLUMN].notna().to_numpy()
                if unverified.any():
                    plt.scatter(dates[unverified], values[unverified], label='Unverified',
                                color='darkorange', s=10, zorder=3)
            plt.plot(dates, smoothed.to_numpy(), label=f'{window}-month rolling mean',
                     color='black', linewidth=1.5)
            plt.plot(dates, trend_line(dates, values), label='Linear trend',
                     color='red', linestyle='--', linewidth=1)
            plt.text(annotation_xy[0], annotation_xy[1], annotation,
                     transform=plt.gca().transAxes, verticalalignment='top', fontsize=12,
                     bbox={'boxstyle': 'round', 'facecolor': 'white', 'alpha': 0.8})

            plt.xlabel("Year")
            plt.ylabel(ylabel)
            plt.title(title)
            plt.legend(loc='lower right')
            plt.grid(True)
            plt.tight_layout()

            for ext in formats:
                path = f"{output_path}.{ext}"
                plt.savefig(path, format=ext, metadata=SAVE_METADATA[ext])
                written.append(path)
        except (OSError, ValueError, RuntimeError) as exc:
            raise RenderError(f"Could not render {output_path}: {exc}") from exc
        finally:
            plt.close(fig)

    return written
