import json
import logging

import pytest
from mysql.connector import Error as MySQLError

from wp_kraken import __version__, cli
from wp_kraken.config import load_config
from wp_kraken.optimization import KRAKED_THUMBS_META, KRAKEN_SIZE_META
from tests.conftest import API_KEY, API_SECRET


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "wp_kraken_config.json"
    path.write_text(json.dumps({
        "wordpress_path": str(tmp_path),
        "kraken": {"api_key": API_KEY, "api_secret": API_SECRET},
        "logging": {"directory": str(tmp_path / "logs")},
    }))
    return str(path)


@pytest.fixture
def wired(monkeypatch, library, client):
    monkeypatch.setattr(cli, 'setup_logging', lambda level, directory: logging.getLogger('wp_kraken'))
    monkeypatch.setattr(cli, 'open_library', lambda config: library)
    monkeypatch.setattr(cli, 'build_client', lambda config, args: client)
    return library, client


def test_version(capsys):
    assert cli.main(['--version']) == 0
    assert __version__ in capsys.readouterr().out


def test_broken_config(tmp_path, capsys):
    path = tmp_path / "broken.json"
    path.write_text("{")
    assert cli.main(['--config', str(path)]) == 1
    assert "Invalid JSON" in capsys.readouterr().out


def test_dry_run(config_file, wired, add_image, capsys):
    library, client = wired
    add_image(1)

    assert cli.main(['--config', config_file, '--dry-run']) == 0

    out = capsys.readouterr().out
    assert "Dry run: Image 1" in out
    assert "1 attachment checked." in out
    assert client.calls == 0
    assert library.closed


def test_live_run_with_ids(config_file, wired, add_image, capsys):
    library, client = wired
    add_image(1)
    add_image(2)

    assert cli.main(['--config', config_file, '2', '--limit', '5']) == 0

    assert library.get(2, KRAKEN_SIZE_META)
    assert library.get(1, KRAKEN_SIZE_META) is None
    assert "1 image successfully kraked." in capsys.readouterr().out


def test_bad_types(config_file, wired, add_image, capsys):
    library, client = wired
    add_image(1)
    assert cli.main(['--config', config_file, '--types', 'jpg,bmp']) == 1
    assert client.calls == 0


def test_reset(config_file, wired, capsys):
    library, client = wired
    library.add_attachment(1)
    library.set(1, KRAKEN_SIZE_META, {'success': True})
    library.set(1, KRAKED_THUMBS_META, [{'thumb': 'medium'}])

    assert cli.main(['--config', config_file, '1', '--reset']) == 0
    assert library.get(1, KRAKEN_SIZE_META) is None
    assert cli.main(['--config', config_file, '--reset']) == 1


def test_reset_all(config_file, wired):
    library, client = wired
    library.add_attachment(1)
    library.set(1, KRAKEN_SIZE_META, {'success': True})
    library.set(1, KRAKED_THUMBS_META, [{'thumb': 'medium'}])

    assert cli.main(['--config', config_file, '--reset-all']) == 0
    assert library.get(1, KRAKED_THUMBS_META) is None


def test_list_unoptimized(config_file, wired, capsys):
    library, client = wired
    library.add_attachment(1, title="Sunset")
    library.add_attachment(2, title="Done")
    library.set(2, KRAKEN_SIZE_META, {'success': True})
    library.set(2, KRAKED_THUMBS_META, [{'thumb': 'medium'}])

    assert cli.main(['--config', config_file, '--list-unoptimized']) == 0
    out = capsys.readouterr().out
    assert "1 unoptimized attachments, page 1 of 1" in out
    assert "1: Sunset" in out
    assert "Done" not in out


def test_on_upload(config_file, wired, add_image, capsys):
    library, client = wired
    add_image(1)

    assert cli.main(['--config', config_file, '1', '--on-upload']) == 0
    assert library.get(1, KRAKEN_SIZE_META)
    assert library.get(1, KRAKED_THUMBS_META)
    assert "1: optimized" in capsys.readouterr().out


@pytest.mark.parametrize("mode", [['1', '--on-upload'], ['1', '--reset'], ['--reset-all']])
def test_dry_run_refuses_mutating_modes(config_file, wired, add_image, mode, capsys):
    library, client = wired
    path = add_image(1)
    before = path.read_bytes()
    library.set(1, KRAKEN_SIZE_META, {'success': True})
    library.set(1, KRAKED_THUMBS_META, [{'thumb': 'medium'}])

    assert cli.main(['--config', config_file, '--dry-run'] + mode) == 1

    assert "--dry-run cannot be combined with" in capsys.readouterr().out
    assert client.calls == 0
    assert path.read_bytes() == before
    assert library.get(1, KRAKEN_SIZE_META) == {'success': True}
    assert library.get(1, KRAKED_THUMBS_META) == [{'thumb': 'medium'}]


def test_database_unreachable(config_file, monkeypatch, capsys):
    monkeypatch.setattr(cli, 'setup_logging', lambda level, directory: logging.getLogger('wp_kraken'))

    def refuse(config):
        raise MySQLError("Can't connect to MySQL server")

    monkeypatch.setattr(cli, 'open_library', refuse)
    assert cli.main(['--config', config_file]) == 1
    assert "Database connection failed" in capsys.readouterr().out


def test_credential_override(config_file):
    config = load_config(config_file)
    args = cli.build_parser().parse_args(['--api-key', 'f' * 32, '--api-secret', 'e' * 40])
    client = cli.build_client(config, args)
    assert client.auth == {'api_key': 'f' * 32, 'api_secret': 'e' * 40}


def test_batch_options_from_flags(config_file):
    config = load_config(config_file)
    args = cli.build_parser().parse_args(['--lossy', '--limit', '3', '--types', 'png', '--all', '--dry-run'])
    options = cli.batch_options(config, args)
    assert options['lossy'] is True
    assert options['limit'] == '3'
    assert options['types'] == 'png'
    assert options['compare'] == 'md4'
    assert options['all'] and options['dry_run']
    assert not options['api_test']
