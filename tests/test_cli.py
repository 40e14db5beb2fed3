import json

from click.testing import CliRunner

from conftest import make_text
from rangefetch.cli import cli, format_size


def test_config_example():
    result = CliRunner().invoke(cli, ["config", "--example"])
    assert result.exit_code == 0
    assert json.loads(result.output)["server_port"] == 8000


def test_config_reads_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"fetcher_port": 9999}))

    result = CliRunner().invoke(cli, ["--config", str(path), "config"])

    assert result.exit_code == 0
    assert json.loads(result.output)["fetcher_port"] == 9999


def test_fetch_and_probe(live_server, serve_root, download_dir):
    url, _ = live_server
    data = make_text(150_000)
    (serve_root / "notes.txt").write_bytes(data)
    runner = CliRunner()

    result = runner.invoke(cli, ["probe", "notes.txt", "--server-url", url])
    assert result.exit_code == 0
    assert "150,000 bytes" in result.output

    result = runner.invoke(cli, [
        "fetch", "notes.txt", "--server-url", url, "-o", str(download_dir),
        "--chunk-size", "50000",
    ])
    assert result.exit_code == 0, result.output
    assert "Download complete" in result.output
    assert (download_dir / "notes.txt").read_bytes() == data

    result = runner.invoke(cli, ["fetch", "notes.txt", "--server-url", url, "-o", str(download_dir)])
    assert result.exit_code == 0
    assert "File already downloaded" in result.output


def test_fetch_rejects_parent_segment(download_dir):
    result = CliRunner().invoke(cli, [
        "fetch", "../notes.txt", "--server-url", "http://127.0.0.1:9", "-o", str(download_dir),
    ])
    assert result.exit_code == 1
    assert "InvalidIdentifier" in result.output


def test_probe_missing_file(live_server):
    url, _ = live_server
    result = CliRunner().invoke(cli, ["probe", "missing.txt", "--server-url", url])
    assert result.exit_code == 1
    assert "UpstreamError" in result.output


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(1_500_000) == "1.4 MB"
