"""
Sea Level Trend Report

This script estimates the rate of sea-level rise at a tide gauge from a
table of monthly mean sea level. It converts the series to feet above MSL
and above MLLW, fits a linear trend with autocorrelated (AR(1)) errors using
generalized least squares, and draws the annotated reference figures.
The trend fit relies on 'statsmodels'; the figures on 'matplotlib'.
"""
import argparse
import os
import sys
from typing import NamedTuple
import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.regression.linear_model import GLSAR
from scipy.stats import linregress

from sea_level_tools import (
    RenderError,
    SUPPORTED_FORMATS,
    UNVERIFIED_COLUMN,
    dates_to_days,
    plot_trend_figure,
    safe_filename,
)

FEET_PER_METRE: float = 3.28084
# MSL to MLLW offset for the covered station; other stations need their own
MLLW_OFFSET_FT: float = 4.94
REFERENCE_DAY: int = 15
DAYS_PER_YEAR: float = 365.25
MM_PER_M: float = 1000.0
INCHES_PER_M: float = 39.3701
YEARS_PER_DECADE: int = 10
Z_95: float = 1.96
DEFAULT_WINDOW: int = 60
MIN_TREND_OBSERVATIONS: int = 3
GLS_MAX_ITER: int = 50
GLS_RTOL: float = 1e-6

YEAR_COLUMN = 'Year'
MONTH_COLUMN = 'Month'
MSL_COLUMN = 'Monthly_MSL'

REPORT_VARIANTS: list[tuple[str, str, str]] = [
    ('msl', 'MSL_ft', "Monthly mean sea level (ft above MSL)"),
    ('mllw', 'MLLW_ft', "Monthly mean sea level (ft above MLLW)"),
]


class DataFormatError(ValueError):
    """Raised when the input table is missing required columns or values."""


class FitConvergenceError(RuntimeError):
    """Raised when the GLS/AR(1) fit cannot produce a stable estimate."""


class TrendEstimate(NamedTuple):
    """Slope of sea level against time, in metres per day."""
    slope_per_day: float
    slope_stderr_per_day: float
    rho: float
    n_obs: int


def metres_to_feet(values):
    return values * FEET_PER_METRE


def msl_to_mllw_feet(feet, datum_offset_ft: float = MLLW_OFFSET_FT):
    return feet + datum_offset_ft


def derive_dates(years, months) -> pd.DatetimeIndex:
    """Maps each (year, month) pair to the 15th of that month."""
    parts = pd.DataFrame({
        'year': np.asarray(years, dtype=int),
        'month': np.asarray(months, dtype=int),
        'day': REFERENCE_DAY,
    })
    return pd.DatetimeIndex(pd.to_datetime(parts))


def _strip_cells(column: pd.Series) -> pd.Series:
    stripped = column.map(lambda v: v.strip() if isinstance(v, str) else v)
    return stripped.where(stripped != '')


def _required_numeric(column: pd.Series, name: str, filename: str,
                      allow_missing: bool) -> pd.Series:
    """Converts a required column to numbers, rejecting any text that is not a number."""
    cells = _strip_cells(column)
    numeric = pd.to_numeric(cells, errors='coerce')

    not_numeric = numeric.isna() & cells.notna()
    if not_numeric.any():
        first = not_numeric.idxmax()
        raise DataFormatError(
            f"Column '{name}' in {filename} has {int(not_numeric.sum())} non-numeric "
            f"value(s), first at data row {first + 1}: {cells[first]!r}."
        )
    if not allow_missing and numeric.isna().any():
        first = numeric.isna().idxmax()
        raise DataFormatError(
            f"Column '{name}' in {filename} has an empty value at data row {first + 1}."
        )
    return numeric


def read_monthly_msl(
    filename: str,
    datum_offset_ft: float = MLLW_OFFSET_FT,
    msl_column: str = MSL_COLUMN,
    unverified_column: str = UNVERIFIED_COLUMN,
    verbose: bool = False
) -> pd.DataFrame:
    """Reads a monthly mean sea level table and adds date and feet columns.

    The file is a CSV with at least 'Year', 'Month' and a monthly mean sea
    level column in metres above MSL. Blank sea level cells are kept as NaN;
    missing months are never filled in. The optional unverified column is
    coerced to numbers, anything unparseable becoming NaN.

Args:
    filename (str): Path to the CSV file.
    datum_offset_ft (float): Feet between MSL and MLLW at the station.
    msl_column (str): Name of the monthly mean sea level column.
    unverified_column (str): Name of the optional unverified column.
    verbose (bool): Print load details.

Returns:
    pd.DataFrame: The source columns plus 'Date', 'MSL_ft' and 'MLLW_ft'.

Raises:
    FileNotFoundError: If the file does not exist.
    DataFormatError: For unreadable files, missing or non-numeric required
        columns, months outside 1-12, duplicate or out-of-order months.
    """
    try:
        data = pd.read_csv(filename, dtype=str, skipinitialspace=True)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"The file {filename} was not found.") from exc
    except pd.errors.EmptyDataError as exc:
        raise DataFormatError(f"File {filename} is empty.") from exc
    except (pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise DataFormatError(f"Error parsing CSV file {filename}: {exc}") from exc

    data.columns = [str(name).strip() for name in data.columns]
    required = [YEAR_COLUMN, MONTH_COLUMN, msl_column]
    missing = [name for name in required if name not in data.columns]
    if missing:
        raise DataFormatError(
            f"File {filename} is missing required column(s): {', '.join(missing)}."
        )

    if data.empty:
        print(f"Warning: No data rows read from {filename}.", file=sys.stderr)

    data[YEAR_COLUMN] = _required_numeric(data[YEAR_COLUMN], YEAR_COLUMN, filename,
                                          allow_missing=False)
    data[MONTH_COLUMN] = _required_numeric(data[MONTH_COLUMN], MONTH_COLUMN, filename,
                                           allow_missing=False)
    data[msl_column] = _required_numeric(data[msl_column], msl_column, filename,
                                         allow_missing=True)

    for name in (YEAR_COLUMN, MONTH_COLUMN):
        if (data[name] % 1 != 0).any():
            raise DataFormatError(f"Column '{name}' in {filename} must hold whole numbers.")
        data[name] = data[name].astype(int)

    out_of_range = ~data[MONTH_COLUMN].between(1, 12)
    if out_of_range.any():
        bad_months = sorted(data.loc[out_of_range, MONTH_COLUMN].unique())
        raise DataFormatError(f"Month value(s) out of range 1-12 in {filename}: {bad_months}.")

    if data.duplicated([YEAR_COLUMN, MONTH_COLUMN]).any():
        raise DataFormatError(f"Duplicate (Year, Month) rows in {filename}.")
    month_index = data[YEAR_COLUMN] * 12 + data[MONTH_COLUMN]
    if (np.diff(month_index.to_numpy()) <= 0).any():
        raise DataFormatError(f"Rows in {filename} are not in chronological order.")

    if unverified_column in data.columns:
        cells = _strip_cells(data[unverified_column])
        data[unverified_column] = pd.to_numeric(cells, errors='coerce')
        coerced = int((data[unverified_column].isna() & cells.notna()).sum())
        if coerced and verbose:
            print(f"Treated {coerced} non-numeric '{unverified_column}' value(s) as unknown.")
    else:
        data[unverified_column] = np.nan

    data['Date'] = derive_dates(data[YEAR_COLUMN], data[MONTH_COLUMN]).to_numpy()
    data['MSL_ft'] = metres_to_feet(data[msl_column])
    data['MLLW_ft'] = msl_to_mllw_feet(data['MSL_ft'], datum_offset_ft)

    if verbose:
        gaps = int(data[msl_column].isna().sum())
        print(f"Loaded {len(data)} monthly rows from {filename} ({gaps} without a sea level value).")
    return data


def _trend_inputs(data: pd.DataFrame, column: str) -> tuple[np.ndarray, np.ndarray]:
    if 'Date' not in data.columns or column not in data.columns:
        raise DataFormatError(f"Trend input needs 'Date' and '{column}' columns.")
    usable = data.dropna(subset=[column])
    return dates_to_days(usable['Date']), usable[column].to_numpy(dtype=float)


def estimate_trend(
    data: pd.DataFrame,
    column: str = MSL_COLUMN,
    maxiter: int = GLS_MAX_ITER,
    rtol: float = GLS_RTOL,
    verbose: bool = False
) -> TrendEstimate:
    """
    Fits sea level against date by GLS with AR(1) errors.

    Dates enter the regression as days since 1970-01-01, so the slope and its
    standard error come out in units of the column per day. Months without a
    value are dropped, not interpolated.

    Raises:
        FitConvergenceError: If there are too few observations, the fit
            fails numerically, the iteration does not converge, or the
            autocorrelation estimate is not inside (-1, 1).
    """
    x, y = _trend_inputs(data, column)
    dropped = len(data) - len(y)
    if dropped and verbose:
        print(f"Excluded {dropped} month(s) without a '{column}' value from the trend fit.")
    if len(y) < MIN_TREND_OBSERVATIONS:
        raise FitConvergenceError(
            f"Need at least {MIN_TREND_OBSERVATIONS} observations for a trend fit, "
            f"got {len(y)}."
        )

    try:
        model = GLSAR(y, sm.add_constant(x), rho=1)
        results = model.iterative_fit(maxiter=maxiter, rtol=rtol)
    except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
        raise FitConvergenceError(f"GLS/AR(1) fit failed: {exc}") from exc

    if not getattr(results, 'converged', True):
        raise FitConvergenceError(
            f"GLS/AR(1) fit did not converge within {maxiter} iterations."
        )

    rho = float(np.atleast_1d(model.rho)[0])
    slope = float(results.params[1])
    stderr = float(results.bse[1])
    if not np.isfinite(rho) or abs(rho) >= 1:
        raise FitConvergenceError(f"Degenerate autocorrelation estimate rho={rho}.")
    if not (np.isfinite(slope) and np.isfinite(stderr)):
        raise FitConvergenceError("GLS/AR(1) fit produced a non-finite slope or standard error.")

    if verbose:
        print(f"GLS/AR(1) converged after {getattr(results, 'iter', '?')} iterations, rho={rho:.3f}.")
    return TrendEstimate(slope, stderr, rho, len(y))


def ols_trend(data: pd.DataFrame, column: str = MSL_COLUMN) -> tuple[float, float]:
    """Ordinary least squares slope and its standard error, per day, for comparison only."""
    x, y = _trend_inputs(data, column)
    fit = linregress(x, y)
    return float(fit.slope), float(fit.stderr)


def annual_rate_mm(value_per_day: float) -> float:
    return value_per_day * DAYS_PER_YEAR * MM_PER_M


def decade_rate_in(value_per_day: float) -> float:
    return value_per_day * DAYS_PER_YEAR * INCHES_PER_M * YEARS_PER_DECADE


def confidence_interval_95(stderr_scaled: float) -> float:
    # Normal quantile rather than Student-t, to match published station values
    return Z_95 * stderr_scaled


RATE_UNITS = {
    'mm/yr': annual_rate_mm,
    'in/decade': decade_rate_in,
}


def format_rate(trend: TrendEstimate, unit: str = 'in/decade', precision: int = 2) -> str:
    """Renders a trend as 'rate ± ci95 unit'."""
    try:
        scale = RATE_UNITS[unit]
    except KeyError as exc:
        raise ValueError(
            f"Unknown rate unit '{unit}', expected one of {', '.join(RATE_UNITS)}."
        ) from exc
    rate = scale(trend.slope_per_day)
    ci95 = confidence_interval_95(scale(trend.slope_stderr_per_day))
    return f"{rate:.{precision}f} ± {ci95:.{precision}f} {unit}"


def summarize_trend(trend: TrendEstimate, ols: tuple[float, float] | None = None) -> str:
    lines = [
        f"Observations used: {trend.n_obs} (lag-1 autocorrelation rho = {trend.rho:.3f})",
        f"Sea level rise (GLS/AR(1)): {format_rate(trend, 'mm/yr')} (95% CI)",
        f"Sea level rise (GLS/AR(1)): {format_rate(trend, 'in/decade')} (95% CI)",
    ]
    if ols is not None:
        ols_estimate = TrendEstimate(ols[0], ols[1], 0.0, trend.n_obs)
        lines.append(
            f"Sea level rise (OLS, for comparison): {format_rate(ols_estimate, 'mm/yr')} (95% CI)"
        )
    return "\n".join(lines)


def compose_report_figures(
    data: pd.DataFrame,
    trend: TrendEstimate,
    output_dir: str,
    windows=(DEFAULT_WINDOW,),
    formats=('png',),
    station_name: str | None = None,
    rate_unit: str = 'in/decade',
    font_family: str | None = None,
    verbose: bool = False
) -> list[str]:
    """
    Draws the feet-above-MSL and feet-above-MLLW figures for each rolling window.

    Every figure carries the same GLS rate annotation. Returns the written
    file paths.

    Raises:
        RenderError: If the output directory cannot be created or a figure
            cannot be written.
    """
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as exc:
        raise RenderError(f"Cannot create output directory {output_dir}: {exc}") from exc

    label = station_name or "Tide gauge"
    annotation = f"Trend: {format_rate(trend, rate_unit)} (95% CI)"
    written = []
    for window in windows:
        for variant, column, ylabel in REPORT_VARIANTS:
            stem = safe_filename(f"{label} {variant} {window}mo")
            paths = plot_trend_figure(
                data,
                annotation,
                column,
                window,
                os.path.join(output_dir, stem),
                formats=formats,
                ylabel=ylabel,
                title=f"{label}: monthly mean sea level with {window}-month rolling mean",
                font_family=font_family
            )
            written.extend(paths)
            if verbose:
                for path in paths:
                    print(f"Wrote {path}")
    return written


def main():
    """
    Main function to parse arguments and run the sea level trend report.
    """
    parser = argparse.ArgumentParser(
        description="Estimate the rate of sea-level rise from monthly mean sea level "
                    "and draw the annotated trend figures."
    )
    parser.add_argument(
        "data_file",
        type=str,
        help="CSV file with Year, Month and Monthly_MSL (metres above MSL) columns."
    )
    parser.add_argument(
        "-o", "--output-dir",
        default="figures",
        help="Directory the figures are written to (created if needed)."
    )
    parser.add_argument(
        "-w", "--window",
        type=int,
        action="append",
        help=f"Rolling mean window in months. Repeat for several figures "
             f"(default {DEFAULT_WINDOW})."
    )
    parser.add_argument(
        "--datum-offset",
        type=float,
        default=MLLW_OFFSET_FT,
        help="Feet between the station's MSL and MLLW datums."
    )
    parser.add_argument(
        "--station-name",
        help="Station name used in figure titles and file names."
    )
    parser.add_argument(
        "--format",
        dest="formats",
        action="append",
        choices=SUPPORTED_FORMATS,
        help="Image format to write. Repeat for several (default png)."
    )
    parser.add_argument(
        "--font-family",
        help="Font family for the figures, e.g. 'DejaVu Sans'."
    )
    parser.add_argument(
        "--no-plot",
        action="store_true",
        help="Print the trend only, without drawing figures."
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output for more details during execution."
    )

    args = parser.parse_args()
    windows = args.window or [DEFAULT_WINDOW]
    if any(window < 1 for window in windows):
        parser.error("--window must be a positive number of months.")

    try:
        data = read_monthly_msl(args.data_file, datum_offset_ft=args.datum_offset,
                                verbose=args.verbose)
    except (FileNotFoundError, DataFormatError) as e:
        print(f"Error loading file {args.data_file}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        trend = estimate_trend(data, verbose=args.verbose)
    except FitConvergenceError as e:
        print(f"Error: trend fit failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(summarize_trend(trend, ols_trend(data)))

    if args.no_plot:
        return

    try:
        compose_report_figures(
            data,
            trend,
            args.output_dir,
            windows=windows,
            formats=args.formats or ['png'],
            station_name=args.station_name,
            font_family=args.font_family,
            verbose=args.verbose
        )
    except RenderError as e:
        print(f"Error: figures not written: {e}", file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
