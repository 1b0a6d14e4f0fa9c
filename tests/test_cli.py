import unittest
from pathlib import Path
from unittest.mock import ANY, patch

from click.testing import CliRunner
from flask import Flask

from podcast_proxy.cli import cli

SAMPLE_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
    <title>Test Feed</title>
    <item>
        <title>Test Item</title>
        <enclosure url="https://cdn.example.com/ep1.mp3" type="audio/mpeg"/>
    </item>
</channel>
</rss>
"""


class TestRewriteCommand(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()

    def test_rewrite_to_stdout(self):
        with self.runner.isolated_filesystem():
            Path("feed.xml").write_bytes(SAMPLE_FEED)
            result = self.runner.invoke(
                cli,
                ["rewrite", "feed.xml", "--base-url", "https://proxy.example/", "--token", "tok"],
            )

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(
            "https://proxy.example/proxy/audio?url=https%3A%2F%2Fcdn.example.com", result.output
        )
        self.assertIn("&amp;apikey=tok", result.output)
        self.assertIn("<title>Test Item</title>", result.output)

    def test_rewrite_keeps_single_byte_encoding(self):
        feed = (
            b'<?xml version="1.0" encoding="windows-1252"?>'
            b"<rss><channel><title>Caf\xe9</title></channel></rss>"
        )
        with self.runner.isolated_filesystem():
            Path("feed.xml").write_bytes(feed)
            result = self.runner.invoke(
                cli, ["rewrite", "feed.xml", "--base-url", "https://proxy.example", "--token", "t"]
            )

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(result.stdout_bytes, feed)

    def test_rewrite_to_file(self):
        with self.runner.isolated_filesystem():
            Path("feed.xml").write_bytes(SAMPLE_FEED)
            result = self.runner.invoke(
                cli,
                [
                    "rewrite",
                    "feed.xml",
                    "--base-url",
                    "http://localhost:8080",
                    "--token",
                    "tok",
                    "-o",
                    "out.xml",
                ],
            )
            written = Path("out.xml").read_bytes()

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(f"Wrote {len(written)} bytes", result.output)
        self.assertIn(b"http://localhost:8080/proxy/audio?url=", written)

    def test_rewrite_malformed_feed(self):
        with self.runner.isolated_filesystem():
            Path("feed.xml").write_bytes(SAMPLE_FEED[:-30])
            result = self.runner.invoke(
                cli, ["rewrite", "feed.xml", "--base-url", "https://proxy.example", "--token", "t"]
            )

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Error: Failed to parse feed XML", result.output)

    def test_rewrite_rejects_bad_base_url(self):
        with self.runner.isolated_filesystem():
            Path("feed.xml").write_bytes(SAMPLE_FEED)
            result = self.runner.invoke(
                cli, ["rewrite", "feed.xml", "--base-url", "proxy.example", "--token", "t"]
            )

        self.assertEqual(result.exit_code, 2)
        self.assertIn("--base-url", result.output)

    def test_rewrite_missing_file(self):
        result = self.runner.invoke(
            cli, ["rewrite", "missing.xml", "--base-url", "https://p.example", "--token", "t"]
        )
        self.assertEqual(result.exit_code, 2)


class TestServeCommand(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()

    @patch.dict("os.environ", {})
    @patch("podcast_proxy.cli.start_metrics_server")
    @patch("podcast_proxy.cli.start_api_server")
    def test_serve_starts_and_stops(self, mock_start, mock_metrics):
        server = mock_start.return_value
        server.is_alive.return_value = False

        with self.runner.isolated_filesystem():
            Path(".env").write_text("API_KEY=from-dotenv\nMETRICS_PORT=9100\n")
            result = self.runner.invoke(cli, ["serve", "--port", "9999", "--env-file", ".env"])

        self.assertEqual(result.exit_code, 0, result.output)
        mock_start.assert_called_once_with(ANY, "0.0.0.0", 9999)
        app = mock_start.call_args[0][0]
        self.assertIsInstance(app, Flask)
        self.assertEqual(app.extensions["podcast_proxy"].config.api_key, "from-dotenv")
        mock_metrics.assert_called_once_with(9100)
        server.shutdown.assert_called_once()

    @patch.dict("os.environ", {})
    @patch("podcast_proxy.cli.start_api_server")
    def test_serve_requires_api_key(self, mock_start):
        with self.runner.isolated_filesystem():
            Path(".env").write_text("PORT=8081\n")
            result = self.runner.invoke(cli, ["serve", "--env-file", ".env"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("API_KEY environment variable is required", result.output)
        mock_start.assert_not_called()


if __name__ == "__main__":
    unittest.main()
