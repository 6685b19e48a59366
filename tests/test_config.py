from config import Config


def test_pdf_and_catchup_limits_read_from_environment(monkeypatch):
    monkeypatch.setenv("PDF_MAX_PAGES", "5")
    monkeypatch.setenv("CATCHUP_LIMIT", "50")

    settings = Config()

    assert settings.PDF_MAX_PAGES == 5
    assert settings.CATCHUP_LIMIT == 50


def test_out_of_range_limits_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("PDF_MAX_PAGES", "0")
    monkeypatch.setenv("CATCHUP_LIMIT", "lots")

    settings = Config()

    assert settings.PDF_MAX_PAGES == 20
    assert settings.CATCHUP_LIMIT == 20
