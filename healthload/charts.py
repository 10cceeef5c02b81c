from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("healthload.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

SUCCESS_COLORS = {
    True: "#2E86AB",  # Blue
    False: "#C73E1D",  # Red
}

ROLLING_WINDOW_SECONDS = 5


def render_run_charts(
    samples: pd.DataFrame,
    vus: pd.DataFrame,
    output_dir: Path,
) -> dict[str, Path]:
    """Render every chart for which there is data; returns name -> written path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    if samples.empty or "latency_ms" not in samples.columns:
        LOGGER.warning("No latency samples available for latency charts")
    else:
        df = samples[samples["latency_ms"].notna() & (samples["latency_ms"] >= 0)].copy()
        if df.empty:
            LOGGER.warning("No valid latency data after filtering")
        else:
            df["elapsed_s"] = df["timestamp"] - df["timestamp"].min()
            df["success"] = df["success"].astype(bool)
            written["latency_timeline"] = _render_latency_timeline(
                df, output_dir / "latency_timeline.png"
            )
            written["latency_distribution"] = _render_latency_distribution(
                df, output_dir / "latency_distribution.png"
            )

    if vus.empty:
        LOGGER.warning("No VU timeline available for VU chart")
    else:
        written["vus_timeline"] = _render_vus_timeline(vus, output_dir / "vus_timeline.png")

    for path in written.values():
        LOGGER.info("Rendered chart %s", path)
    return written


def _render_latency_timeline(df: pd.DataFrame, chart_path: Path) -> Path:
    """Scatter of every request over time with a rolling p95 line."""
    fig, ax = plt.subplots(figsize=(12, 6))

    for success, subset in df.groupby("success"):
        ax.scatter(
            subset["elapsed_s"],
            subset["latency_ms"],
            s=6,
            alpha=0.35,
            color=SUCCESS_COLORS[bool(success)],
            label="ok" if success else "failed",
        )

    ordered = df.sort_values("elapsed_s")
    buckets = (ordered["elapsed_s"] // ROLLING_WINDOW_SECONDS) * ROLLING_WINDOW_SECONDS
    p95 = ordered.groupby(buckets)["latency_ms"].quantile(0.95)
    if not p95.empty:
        ax.plot(
            p95.index + ROLLING_WINDOW_SECONDS / 2,
            p95.values,
            color="#F18F01",
            linewidth=2.5,
            marker="o",
            markersize=4,
            label=f"p95 ({ROLLING_WINDOW_SECONDS}s buckets)",
        )

    ax.set_xlabel("Elapsed (s)", fontweight="semibold")
    ax.set_ylabel("Latency (ms)", fontweight="semibold")
    ax.set_title("Request Latency over Time", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.legend(loc="upper right", frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


def _render_latency_distribution(df: pd.DataFrame, chart_path: Path) -> Path:
    fig, ax = plt.subplots(figsize=(10, 6))

    sns.histplot(data=df, x="latency_ms", bins=50, color="#2E86AB", ax=ax)

    percentiles = {
        "p50": float(np.percentile(df["latency_ms"], 50)),
        "p95": float(np.percentile(df["latency_ms"], 95)),
        "p99": float(np.percentile(df["latency_ms"], 99)),
    }
    colors = {"p50": "#6A994E", "p95": "#F18F01", "p99": "#C73E1D"}
    for label, value in percentiles.items():
        ax.axvline(value, color=colors[label], linestyle="--", linewidth=1.5, label=f"{label} {value:.1f}ms")

    ax.set_xlabel("Latency (ms)", fontweight="semibold")
    ax.set_ylabel("Requests", fontweight="semibold")
    ax.set_title("Latency Distribution", fontweight="bold", pad=15)
    ax.legend(loc="upper right", frameon=True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


def _render_vus_timeline(vus: pd.DataFrame, chart_path: Path) -> Path:
    fig, ax = plt.subplots(figsize=(10, 5))

    ax.plot(vus["elapsed_s"], vus["target"], color="#A23B72", linestyle="--", linewidth=1.5, label="target")
    ax.step(vus["elapsed_s"], vus["active"], where="post", color="#2E86AB", linewidth=2.5, label="active")

    ax.set_xlabel("Elapsed (s)", fontweight="semibold")
    ax.set_ylabel("Virtual users", fontweight="semibold")
    ax.set_title("Virtual Users over Time", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.legend(loc="upper right", frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path
