import json
import subprocess
import unittest
from unittest import mock

from render_worker.services.media_probe import MediaProbeError, probe_video
from render_worker.services.process_utils import ProcessError, sanitize_output


def _completed(stdout: str) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(["ffprobe"], 0, stdout=stdout, stderr="")


class TestProbeVideo(unittest.TestCase):
    def test_reads_first_video_stream(self) -> None:
        out = json.dumps({"streams": [{"width": 1920, "height": 1080, "duration": "12.040000"}]})
        with mock.patch("render_worker.services.media_probe.run_capture", return_value=_completed(out)) as run:
            info = probe_video("/tmp/v.mp4")

        self.assertEqual(info.resolution, "1920x1080")
        self.assertAlmostEqual(info.duration_seconds, 12.04)
        cmd = run.call_args.args[0]
        self.assertEqual(cmd[-1], "/tmp/v.mp4")
        self.assertIn("stream=width,height,duration", cmd)

    def test_no_streams(self) -> None:
        with mock.patch("render_worker.services.media_probe.run_capture", return_value=_completed('{"streams": []}')):
            with self.assertRaises(MediaProbeError):
                probe_video("/tmp/v.mp4")

    def test_missing_duration(self) -> None:
        out = json.dumps({"streams": [{"width": 640, "height": 360}]})
        with mock.patch("render_worker.services.media_probe.run_capture", return_value=_completed(out)):
            with self.assertRaises(MediaProbeError):
                probe_video("/tmp/v.mp4")

    def test_process_failure(self) -> None:
        err = ProcessError(message="ffprobe failed (exit 1)", stderr="moov atom not found", returncode=1)
        with mock.patch("render_worker.services.media_probe.run_capture", side_effect=err):
            with self.assertRaises(MediaProbeError) as ctx:
                probe_video("/tmp/v.mp4")
        self.assertEqual(ctx.exception.stderr, "moov atom not found")


class TestSanitizeOutput(unittest.TestCase):
    def test_drops_yarn_noise_and_keeps_tail(self) -> None:
        raw = "yarn run v1.22.19\n$ mulmo movie script.json\n" + "\n".join(f"line {i}" for i in range(40))
        out = sanitize_output(raw, max_lines=5)
        self.assertEqual(out.split("\n"), [f"line {i}" for i in range(35, 40)])

    def test_empty(self) -> None:
        self.assertEqual(sanitize_output(""), "no output captured")


if __name__ == "__main__":
    unittest.main()
