"""Tests for main.py CLI functionality."""

import io
import json
from unittest.mock import patch

from PIL import Image

from image_handler.main import main
from image_handler.testing import create_test_image


class TestMainCLI:
    """Tests for the main CLI functionality."""

    def test_main_with_no_args_shows_help(self):
        """Test that running main without arguments shows help."""
        with patch("sys.argv", ["image-handler"]):
            with patch("argparse.ArgumentParser.print_help") as mock_help:
                with patch("sys.exit") as mock_exit:
                    main()
                    mock_help.assert_called_once()
                    mock_exit.assert_called_once_with(1)

    def test_main_version_command(self):
        """Test version command output."""
        with patch("sys.argv", ["image-handler", "version"]):
            with patch("builtins.print") as mock_print:
                with patch("sys.exit") as mock_exit:
                    main()
                    mock_print.assert_any_call("Image Handler CLI")
                    mock_print.assert_any_call("Version 0.1.0")
                    mock_print.assert_any_call("On-demand image transformation for S3")
                    mock_exit.assert_called_once_with(0)

    def test_main_transform_command(self, tmp_path):
        """Test transform command resizes and converts a local file."""
        source = tmp_path / "photo.jpg"
        source.write_bytes(create_test_image(200, 100))
        output = tmp_path / "thumb.webp"

        test_args = [
            "image-handler",
            "transform",
            str(source),
            str(output),
            "--edits",
            json.dumps({"resize": {"width": 50}}),
            "--format",
            "webp",
        ]
        with patch("sys.argv", test_args):
            with patch("sys.exit") as mock_exit:
                main()
                mock_exit.assert_called_once_with(0)

        with Image.open(io.BytesIO(output.read_bytes())) as image:
            assert image.format == "WEBP"
            assert image.size == (50, 25)

    def test_main_transform_invalid_edits(self, tmp_path):
        """Test transform command reports invalid edits."""
        source = tmp_path / "photo.jpg"
        source.write_bytes(create_test_image(20, 20))

        test_args = [
            "image-handler",
            "transform",
            str(source),
            str(tmp_path / "out.jpg"),
            "--edits",
            json.dumps({"explode": True}),
        ]
        with patch("sys.argv", test_args):
            with patch("sys.exit") as mock_exit:
                main()
                mock_exit.assert_called_once_with(1)
        assert not (tmp_path / "out.jpg").exists()

    def test_main_transform_missing_input(self, tmp_path):
        """Test transform command with a missing source file."""
        test_args = [
            "image-handler",
            "transform",
            str(tmp_path / "missing.jpg"),
            str(tmp_path / "out.jpg"),
        ]
        with patch("sys.argv", test_args):
            with patch("sys.exit") as mock_exit:
                main()
                mock_exit.assert_called_once_with(1)

    def test_main_invoke_command(self, tmp_path):
        """Test invoke command passes the event to the Lambda handler."""
        event = {"path": "/image/abc", "headers": {}}
        event_file = tmp_path / "event.json"
        event_file.write_text(json.dumps(event))

        with patch("sys.argv", ["image-handler", "invoke", str(event_file)]):
            with patch("image_handler.main.handler") as mock_handler:
                mock_handler.return_value = {"statusCode": 200}
                with patch("builtins.print") as mock_print:
                    with patch("sys.exit") as mock_exit:
                        main()
                        mock_handler.assert_called_once_with(event)
                        mock_print.assert_called_once()
                        mock_exit.assert_called_once_with(0)

    def test_main_invoke_bad_json(self, tmp_path):
        """Test invoke command with a malformed event file."""
        event_file = tmp_path / "event.json"
        event_file.write_text("{not json")

        with patch("sys.argv", ["image-handler", "invoke", str(event_file)]):
            with patch("image_handler.main.handler") as mock_handler:
                with patch("sys.exit") as mock_exit:
                    main()
                    mock_handler.assert_not_called()
                    mock_exit.assert_called_once_with(1)
