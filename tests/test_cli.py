import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path

from feedmaker.__main__ import _build_parser, _extraction_options, _run_command
from feedmaker.http.cache import HttpCache
from feedmaker.http.models import CacheEntry

from test_refresh import make_config


class CliTests(unittest.IsolatedAsyncioTestCase):
    def test_generate_arguments(self) -> None:
        args = _build_parser().parse_args(
            [
                "generate",
                "https://example.com/news",
                "--format",
                "jsonfeed",
                "--native",
                "--include",
                "apple",
                "--include",
                "pear",
                "--item-selector",
                "div.card",
            ]
        )

        self.assertEqual(args.command, "generate")
        self.assertEqual(args.format, "jsonfeed")
        self.assertTrue(args.native)
        self.assertEqual(args.include, ["apple", "pear"])
        self.assertEqual(_extraction_options(args).item_selector, "div.card")
        self.assertEqual(args.config, "data/config/config.yaml")

    def test_unknown_format_is_rejected(self) -> None:
        with redirect_stderr(StringIO()), self.assertRaises(SystemExit):
            _build_parser().parse_args(["generate", "https://example.com/", "--format", "atom"])

    async def test_clear_cache(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = make_config(Path(tmp))
            cache = HttpCache(config.storage.cache_dir)
            entry = CacheEntry(
                url="https://example.com/",
                status=200,
                headers={},
                final_url="https://example.com/",
                etag=None,
                last_modified=None,
                fetched_at=0.0,
            )
            cache.put("https://example.com/", entry, b"body")
            args = _build_parser().parse_args(["--config", str(Path(tmp) / "config.yaml"), "clear-cache"])

            out = StringIO()
            with redirect_stdout(out):
                code = await _run_command(args, config)

            self.assertEqual(code, 0)
            self.assertIn("Removed 2 cache files.", out.getvalue())
            self.assertIsNone(cache.get("https://example.com/"))


if __name__ == "__main__":
    unittest.main()
