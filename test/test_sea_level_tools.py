import matplotlib
matplotlib.use("Agg")
import pytest
import pandas as pd
import numpy as np
import sys
sys.path.insert(0,"../")
sys.path.insert(0,"./")
from unittest.mock import patch, ANY

from sea_level_tools import (
    RenderError,
    dates_to_days,
    plot_trend_figure,
    rolling_mean,
    safe_filename,
    trend_line,
)

# --- Fixtures ---
@pytest.fixture
def monthly_df():
    dates = pd.date_range('2010-01-15', periods=36, freq=pd.DateOffset(months=1))
    sea_level = 0.5 + 0.01 * np.arange(36) + 0.05 * np.sin(np.arange(36))
    return pd.DataFrame({
        'Date': dates,
        'MSL_ft': sea_level,
        'Unverified': np.nan,
    })

@pytest.fixture
def monthly_df_unverified(monthly_df):
    df = monthly_df.copy()
    df.loc[33:, 'Unverified'] = df.loc[33:, 'MSL_ft']
    return df

@pytest.fixture
def annotation():
    return "Trend: 1.10 ± 0.08 in/decade (95% CI)"

# --- Tests for rolling_mean ---

def test_rolling_mean_odd_window_edges():
    series = pd.Series(np.arange(10, dtype=float))
    smoothed = rolling_mean(series, 5)
    assert smoothed.iloc[:2].isna().all()
    assert smoothed.iloc[-2:].isna().all()
    assert smoothed.iloc[2] == pytest.approx(2.0)
    assert smoothed.iloc[7] == pytest.approx(7.0)

def test_rolling_mean_even_window_is_trimmed_symmetrically():
    series = pd.Series(np.arange(10, dtype=float))
    smoothed = rolling_mean(series, 4)
    assert smoothed.isna().tolist() == [True, True] + [False] * 6 + [True, True]
    # even windows reach one step further back than forward
    assert smoothed.iloc[2] == pytest.approx(np.mean([0, 1, 2, 3]))
    assert smoothed.iloc[7] == pytest.approx(np.mean([5, 6, 7, 8]))

@pytest.mark.parametrize("window", [3, 4, 24, 60])
def test_rolling_mean_no_value_near_boundaries(window):
    rng = np.random.default_rng(window)
    values = rng.normal(size=120)
    smoothed = rolling_mean(pd.Series(values), window)
    half = window // 2
    for i in range(len(values)):
        if i < half or len(values) - 1 - i < half:
            assert np.isnan(smoothed.iloc[i])
        else:
            start = i - half
            assert smoothed.iloc[i] == pytest.approx(values[start:start + window].mean())

def test_rolling_mean_missing_month_is_a_gap():
    dates = pd.date_range('2000-01-15', periods=12, freq=pd.DateOffset(months=1))
    series = pd.Series(np.arange(12, dtype=float), index=dates).drop(dates[6])
    smoothed = rolling_mean(series, 3)

    assert smoothed.index.equals(series.index)
    # windows touching June are undefined, others are unaffected
    assert np.isnan(smoothed[dates[5]])
    assert np.isnan(smoothed[dates[7]])
    assert smoothed[dates[4]] == pytest.approx(4.0)
    assert smoothed[dates[8]] == pytest.approx(8.0)

def test_rolling_mean_min_periods_bridges_gap():
    series = pd.Series([1.0, 2.0, np.nan, 4.0, 5.0, 6.0])
    smoothed = rolling_mean(series, 3, min_periods=2)
    assert smoothed.iloc[2] == pytest.approx(3.0)
    assert np.isnan(smoothed.iloc[0])
    assert np.isnan(smoothed.iloc[-1])

def test_rolling_mean_rejects_bad_window():
    with pytest.raises(ValueError):
        rolling_mean(pd.Series([1.0, 2.0]), 0)
    with pytest.raises(ValueError):
        rolling_mean(pd.Series([1.0, 2.0]), 2, min_periods=3)

# --- Tests for trend_line and helpers ---

def test_dates_to_days():
    days = dates_to_days(pd.to_datetime(['1970-01-01', '1970-01-02', '1971-01-01']))
    assert days.tolist() == [0.0, 1.0, 365.0]

def test_trend_line_recovers_exact_line(monthly_df):
    days = dates_to_days(monthly_df['Date'])
    values = 1.5 + 0.0002 * days
    line = trend_line(monthly_df['Date'], values)
    assert np.allclose(line, values)

def test_trend_line_skips_missing_values(monthly_df):
    days = dates_to_days(monthly_df['Date'])
    values = 1.5 + 0.0002 * days
    values[[3, 10]] = np.nan
    line = trend_line(monthly_df['Date'], values)
    assert np.isfinite(line).all()
    assert line[3] == pytest.approx(1.5 + 0.0002 * days[3])

def test_trend_line_insufficient_data(monthly_df, capsys):
    values = np.full(len(monthly_df), np.nan)
    values[0] = 1.0
    line = trend_line(monthly_df['Date'], values)
    assert np.isnan(line).all()
    captured = capsys.readouterr()
    assert "Warning: fewer than two valid points" in captured.err

def test_safe_filename():
    assert safe_filename("Station / 42 msl 60mo") == "Station___42_msl_60mo"

# --- Tests for plot_trend_figure ---

@patch('sea_level_tools.plt')
def test_plot_trend_figure_saves_each_format(mock_plt, monthly_df, annotation):
    paths = plot_trend_figure(monthly_df, annotation, 'MSL_ft', 12, 'out/fig',
                              formats=('png', 'svg'), ylabel="Feet", title="Title")

    assert paths == ['out/fig.png', 'out/fig.svg']
    mock_plt.figure.assert_called_once_with(figsize=(12, 6))
    mock_plt.savefig.assert_any_call('out/fig.png', format='png', metadata=None)
    mock_plt.savefig.assert_any_call('out/fig.svg', format='svg', metadata={'Date': None})
    mock_plt.close.assert_called_once_with(mock_plt.figure.return_value)
    mock_plt.ylabel.assert_called_with("Feet")
    mock_plt.title.assert_called_with("Title")
    mock_plt.legend.assert_called_once()
    mock_plt.show.assert_not_called()

@patch('sea_level_tools.plt')
def test_plot_trend_figure_annotation_and_layers(mock_plt, monthly_df, annotation):
    plot_trend_figure(monthly_df, annotation, 'MSL_ft', 12, 'fig')

    mock_plt.text.assert_called_once_with(
        0.02, 0.95, annotation, transform=mock_plt.gca.return_value.transAxes,
        verticalalignment='top', fontsize=12, bbox=ANY
    )
    plot_labels = [call.kwargs.get('label') for call in mock_plt.plot.call_args_list]
    assert plot_labels == ['Monthly mean', '12-month rolling mean', 'Linear trend']
    mock_plt.scatter.assert_not_called()

@patch('sea_level_tools.plt')
def test_plot_trend_figure_marks_unverified(mock_plt, monthly_df_unverified, annotation):
    plot_trend_figure(monthly_df_unverified, annotation, 'MSL_ft', 12, 'fig')

    mock_plt.scatter.assert_called_once()
    args, kwargs = mock_plt.scatter.call_args
    assert len(args[0]) == 3
    assert kwargs['label'] == 'Unverified'

@patch('sea_level_tools.plt')
def test_plot_trend_figure_font_family(mock_plt, monthly_df, annotation):
    plot_trend_figure(monthly_df, annotation, 'MSL_ft', 12, 'fig', font_family='DejaVu Sans')
    rc = mock_plt.rc_context.call_args.args[0]
    assert rc['font.family'] == 'DejaVu Sans'

@patch('sea_level_tools.plt')
def test_plot_trend_figure_write_failure(mock_plt, monthly_df, annotation):
    mock_plt.savefig.side_effect = OSError("Permission denied")

    with pytest.raises(RenderError, match="Permission denied"):
        plot_trend_figure(monthly_df, annotation, 'MSL_ft', 12, '/locked/fig')
    mock_plt.close.assert_called_once()

@patch('sea_level_tools.plt')
def test_plot_trend_figure_unknown_format(mock_plt, monthly_df, annotation):
    with pytest.raises(RenderError, match="Unsupported image format"):
        plot_trend_figure(monthly_df, annotation, 'MSL_ft', 12, 'fig', formats=('bmp',))
    mock_plt.figure.assert_not_called()

@patch('sea_level_tools.plt')
def test_plot_trend_figure_nothing_to_plot(mock_plt, monthly_df, annotation):
    empty = monthly_df.iloc[0:0]
    with pytest.raises(RenderError):
        plot_trend_figure(empty, annotation, 'MSL_ft', 12, 'fig')
    with pytest.raises(RenderError):
        plot_trend_figure(monthly_df, annotation, 'MLLW_ft', 12, 'fig')
    mock_plt.figure.assert_not_called()

def test_plot_trend_figure_renders_files(monthly_df_unverified, annotation, tmp_path):
    first = plot_trend_figure(monthly_df_unverified, annotation, 'MSL_ft', 12,
                              str(tmp_path / 'a'), formats=('png', 'svg'))
    second = plot_trend_figure(monthly_df_unverified, annotation, 'MSL_ft', 12,
                               str(tmp_path / 'b'), formats=('png', 'svg'))

    for path_a, path_b in zip(first, second):
        with open(path_a, 'rb') as fa, open(path_b, 'rb') as fb:
            content_a = fa.read()
            assert content_a
            assert content_a == fb.read()
