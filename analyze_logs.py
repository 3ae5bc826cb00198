#!/usr/bin/env python3
import argparse
import math
import statistics
from pathlib import Path
from typing import Dict, List, Tuple

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from testbed.config import Settings
from testbed.events import iter_events, log_files

plt.style.use("seaborn-v0_8-whitegrid")
plt.rcParams.update(
    {
        "figure.figsize": (8, 5),
        "axes.titlesize": 12,
        "axes.labelsize": 11,
        "xtick.labelsize": 10,
        "ytick.labelsize": 10,
        "legend.fontsize": 10,
    }
)


def _mean_std(values: List[float]) -> Tuple[float, float]:
    if not values:
        return (math.nan, math.nan)
    if len(values) == 1:
        return (values[0], 0.0)
    return (statistics.mean(values), statistics.stdev(values))


def _p95(values: pd.Series) -> float:
    arr = values.to_numpy(dtype=float)
    arr = arr[~np.isnan(arr)]
    if arr.size == 0:
        return math.nan
    return float(np.percentile(arr, 95))


def _collect_events(log_dir: Path) -> Tuple[List[Dict], List[Tuple[str, str]]]:
    rows: List[Dict] = []
    skipped: List[Tuple[str, str]] = []
    for path in log_files(log_dir):
        ops = list(iter_events(path, "node_op"))
        if not ops:
            skipped.append((str(path), "no node_op events"))
            continue
        for record in ops:
            try:
                node = int(record["node"])
            except (KeyError, TypeError, ValueError):
                skipped.append((str(path), f"node_op without node index at ts_ms={record.get('ts_ms')}"))
                continue
            duration = record.get("duration_ms")
            rows.append(
                {
                    "run_id": record.get("run_id", ""),
                    "log_file": path.name,
                    "ts_ms": record.get("ts_ms"),
                    "label": record.get("label") or "op",
                    "node": node,
                    "duration_ms": float(duration) if isinstance(duration, (int, float)) else math.nan,
                    "exit_code": record.get("exit_code"),
                    "ok": bool(record.get("ok", False)),
                    "error": record.get("error", ""),
                }
            )
    return rows, skipped


def summarize(df: pd.DataFrame) -> pd.DataFrame:
    summary = df.groupby(["label", "node"], as_index=False).agg(
        duration_mean=("duration_ms", "mean"),
        duration_std=("duration_ms", "std"),
        runs=("run_id", "count"),
        failures=("ok", lambda s: int((~s.astype(bool)).sum())),
    )
    p95 = (
        df.groupby(["label", "node"])["duration_ms"]
        .apply(_p95)
        .reset_index(name="duration_p95")
    )
    return summary.merge(p95, on=["label", "node"]).sort_values(["label", "node"]).reset_index(drop=True)


def _save_df(df: pd.DataFrame, out_csv: Path) -> None:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_csv, index=False)


def _plot_duration_by_node(df: pd.DataFrame, label: str, out_png: Path) -> None:
    xs = sorted(df["node"].unique().tolist())
    means = []
    stds = []
    for x in xs:
        vals = df[df["node"] == x]["duration_ms"].dropna().astype(float).tolist()
        m, s = _mean_std(vals)
        means.append(m)
        stds.append(s)
    plt.figure()
    plt.errorbar(xs, means, yerr=stds, marker="o", capsize=5)
    plt.title(f"{label}: duration per node")
    plt.xlabel("node")
    plt.ylabel("Duration (ms)")
    plt.xticks(xs, [str(x) for x in xs])
    plt.grid(True, axis="y", linestyle="--", linewidth=0.5)
    plt.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_png, dpi=170)
    plt.close()


def _plot_failures(summary: pd.DataFrame, out_png: Path) -> None:
    per_label = summary.groupby("label", as_index=False).agg(failures=("failures", "sum"), runs=("runs", "sum"))
    xpos = list(range(len(per_label)))
    plt.figure()
    plt.bar(xpos, per_label["runs"], alpha=0.35, color="#4c78a8", label="runs")
    plt.bar(xpos, per_label["failures"], alpha=0.85, color="#e45756", label="failures")
    plt.xticks(xpos, per_label["label"].tolist())
    plt.title("Node operations and failures by command")
    plt.xlabel("command")
    plt.ylabel("node operations")
    plt.grid(True, axis="y", linestyle="--", linewidth=0.5)
    plt.legend()
    plt.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_png, dpi=170)
    plt.close()


def analyze(testbed_dir: Path) -> int:
    log_dir = testbed_dir / "logs"
    out_dir = testbed_dir / "analysis"
    rows, skipped = _collect_events(log_dir)
    if not rows:
        print(f"[WARN] no node operations recorded in {log_dir}")
        return 0

    df = pd.DataFrame(rows)
    _save_df(df, out_dir / "node_ops.csv")
    summary = summarize(df)
    _save_df(summary, out_dir / "node_ops_summary.csv")

    plots = 0
    for label in sorted(df["label"].unique().tolist()):
        _plot_duration_by_node(df[df["label"] == label], label, out_dir / f"duration_by_node_{label}.png")
        plots += 1
    _plot_failures(summary, out_dir / "failures_by_command.png")
    plots += 1

    with (out_dir / "skipped_logs.txt").open("w", encoding="utf-8") as f:
        for name, reason in skipped:
            f.write(f"{name} :: {reason}\n")
    return plots


def main() -> None:
    ap = argparse.ArgumentParser(description="Summarize testbed dispatch logs and generate plots")
    ap.add_argument("--testbed-dir", default=None, help="testbed directory; overrides --root/--testbed")
    ap.add_argument("--root", default=None)
    ap.add_argument("--testbed", default=None)
    args = ap.parse_args()

    if args.testbed_dir is not None:
        testbed_dir = Path(args.testbed_dir).resolve()
    else:
        testbed_dir = Settings.from_env(root=args.root, testbed=args.testbed).testbed_dir
    total_plots = analyze(testbed_dir)
    print(f"[DONE] Generated {total_plots} plot(s) under {testbed_dir / 'analysis'}")


if __name__ == "__main__":
    main()
