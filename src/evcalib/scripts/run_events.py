from __future__ import annotations

import argparse
from pathlib import Path

import cv2
import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from evcalib.dataset.event_txt import EventTxtSequence
from evcalib.modules.norm_flow import NormFlow
from evcalib.system.telemetry import Telemetry
from evcalib.system.runner import init_state, step


class FlowVisualizer:
    def __init__(self, width: int, height: int):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121)
        self.ax2 = self.fig.add_subplot(122)
        self.width = width
        self.height = height
        self.counts: list[int] = []

    def update(self, time_surface: np.ndarray, flows: list[NormFlow]):
        self.counts.append(len(flows))

        self.ax1.clear()
        self.ax1.imshow(time_surface, cmap="gray", vmin=0, vmax=255)
        if flows:
            pos = np.array([f.pos for f in flows], dtype=np.float64)
            vec = np.array([f.flow for f in flows], dtype=np.float64)
            self.ax1.quiver(pos[:, 0], pos[:, 1], vec[:, 0], vec[:, 1],
                            color="lime", angles="xy", scale_units="xy", scale=50.0)
        self.ax1.set_xlim(0, self.width)
        self.ax1.set_ylim(self.height, 0)
        self.ax1.set_title(f"Normal flow ({len(flows)} vectors)")

        self.ax2.clear()
        self.ax2.plot(self.counts, "b-", linewidth=1.5, alpha=0.7)
        self.ax2.set_xlabel("window")
        self.ax2.set_ylabel("#flows")
        self.ax2.set_title("Flows per window")
        self.ax2.grid(True)

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def _write_flows(rows: list[tuple[float, int, int, float, float]], out_path: str) -> None:
    with open(out_path, "w", encoding="utf-8") as f:
        f.write("# timestamp x y flow_x flow_y\n")
        for ts, x, y, fx, fy in rows:
            f.write(f"{ts:.6f} {x:d} {y:d} {fx:.6f} {fy:.6f}\n")


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--events", type=str, required=True, help="Path to a 't x y p' event text file")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--visualize", action="store_true", help="Enable real-time flow visualization")
    ap.add_argument("--viz_update_every", type=int, default=5, help="Update visualization every N windows")
    ap.add_argument("--save_images_every", type=int, default=0, help="Save debug mosaics every N windows (0: off)")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N windows")
    args = ap.parse_args()

    print(f"[INFO] Loading config: {args.config}")
    with open(args.config, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    seq_name = cfg.get("dataset", {}).get("sequence", Path(args.events).stem)
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    print(f"[INFO] Loading events: {args.events}")
    seq = EventTxtSequence(args.events)
    print(f"[INFO] Events: {len(seq)}")

    state = init_state(cfg)
    telemetry = Telemetry()
    visualizer = FlowVisualizer(state.surface.intri.width, state.surface.intri.height) if args.visualize else None

    window_sec = float(cfg.get("dataset", {}).get("window_sec", 0.02))
    max_batches = cfg.get("dataset", {}).get("max_batches", None)
    if max_batches is not None:
        max_batches = int(max_batches)
    decay_sec = float(cfg.get("norm_flow", {}).get("decay_sec", 0.02))

    flow_rows: list[tuple[float, int, int, float, float]] = []
    print(f"[INFO] Starting loop: window={window_sec}s max_batches={max_batches}")
    for idx, batch in seq.iter_batches(window_sec, max_batches=max_batches):
        pack = step(state, batch, cfg, telemetry)
        for nf in pack.flows:
            flow_rows.append((nf.timestamp, nf.pos[0], nf.pos[1], float(nf.flow[0]), float(nf.flow[1])))

        if args.log_every > 0 and ((idx + 1) % args.log_every == 0):
            print(f"[INFO] Window {idx + 1}: {len(pack.flows)} flows, {len(flow_rows)} total")

        if args.save_images_every > 0 and idx % args.save_images_every == 0:
            img_path = out_dir / f"norm_flow_{idx:06d}.png"
            cv2.imwrite(str(img_path), pack.visualization(decay_sec))

        if visualizer is not None and idx % args.viz_update_every == 0:
            ts_img = state.surface.time_surface(True, False, 0, decay_sec)
            visualizer.update(ts_img, pack.flows)

    # Save outputs
    flows_path = str(out_dir / "flows.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    _write_flows(flow_rows, flows_path)

    telemetry.dump_json(metrics_path)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    print(f"[OK] wrote: {flows_path}")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final state. Close the window to exit.")
        visualizer.close()


if __name__ == "__main__":
    main()
