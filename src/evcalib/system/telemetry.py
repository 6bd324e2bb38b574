import json


class Telemetry:
    def __init__(self):
        self.frames = []

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def reasons(self, key: str = "reason") -> dict:
        # how often each reason code showed up across logged frames
        counts: dict = {}
        for rec in self.frames:
            r = rec.get(key)
            if r is not None:
                counts[r] = counts.get(r, 0) + 1
        return counts

    def dump_json(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"frames": self.frames, "reasons": self.reasons()}, f, indent=2)
