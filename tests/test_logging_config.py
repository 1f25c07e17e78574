from logging_config import OWN_LOGGERS, build_logging_config


def test_defaults(monkeypatch):
    monkeypatch.delenv('LOG_FILE', raising=False)
    monkeypatch.delenv('LOG_FORMAT', raising=False)
    monkeypatch.delenv('DEBUG', raising=False)

    config = build_logging_config()

    assert config['handlers']['file']['filename'] == 'options_market_maker.log'
    assert config['handlers']['console']['formatter'] == 'detailed'
    assert config['loggers']['']['handlers'] == ['console', 'file']
    assert config['loggers']['websockets'] == {'level': 'WARNING'}
    assert all(config['loggers'][name]['level'] == 'INFO' for name in OWN_LOGGERS)


def test_empty_log_file_disables_file_handler(monkeypatch):
    monkeypatch.setenv('LOG_FILE', '')
    config = build_logging_config()

    assert 'file' not in config['handlers']
    assert config['loggers']['']['handlers'] == ['console']


def test_debug_flag_and_simple_format(monkeypatch):
    monkeypatch.setenv('DEBUG', '1')
    config = build_logging_config(log_file='mm.log', console_format='simple')

    assert config['handlers']['file']['filename'] == 'mm.log'
    assert config['handlers']['console']['formatter'] == 'simple'
    assert config['loggers']['rfq_client']['level'] == 'DEBUG'
