"""Tests for the portal navigation state machine against a scripted fake portal"""

import pytest

from debit_models import Subject, YearOption
from fakes import FakePage, FakeTimeoutError
from portal_navigator import (
    IdentifierFieldNotFound,
    NavState,
    PortalUnavailable,
    dedupe_year_options,
    detect_captcha,
    display_name_from_markup,
)


def test_detect_captcha_from_markup_or_frames():
    assert detect_captcha('<div class="h-captcha" data-sitekey="x"><script src="https://js.hcaptcha.com/1/api.js"></script></div>', [])
    assert detect_captcha("<html></html>", ["https://newassets.hcaptcha.com/captcha/v1/frame"])
    assert not detect_captcha("<html><body>ok</body></html>", ["about:blank"])


def test_display_name_from_markup():
    assert display_name_from_markup("<p><strong>Nome:</strong> ACME LTDA </p>") == "ACME LTDA"
    assert display_name_from_markup("<p>sem nome</p>") is None


def test_dedupe_year_options_keeps_first_occurrence():
    options = [YearOption.classify("2024", "2024"), YearOption.classify(None, "2024"), YearOption.classify("2023", "2023")]
    assert [o.label for o in dedupe_year_options(options)] == ["2024", "2023"]


async def test_load_failure_is_fatal(make_navigator, subject):
    page = FakePage()
    page.goto_error = FakeTimeoutError("net::ERR_CONNECTION_REFUSED")
    nav = make_navigator(page, subject)
    with pytest.raises(PortalUnavailable):
        await nav.load()
    assert nav.state is NavState.INIT


async def test_missing_identifier_field_is_fatal(make_navigator, subject):
    page = FakePage("<p>Serviço indisponível</p>")
    nav = make_navigator(page, subject)
    with pytest.raises(IdentifierFieldNotFound):
        await nav.submit_identifier()


async def test_identification_flow(make_navigator, subject, portal):
    nav = make_navigator(portal, subject)
    await nav.load()
    assert nav.state is NavState.LOADED
    assert not await nav.wait_past_captcha()

    await nav.submit_identifier()
    assert portal.keys == ["Enter"]
    assert portal.screen == "home"
    assert nav.state is NavState.IDENTIFIER_SUBMITTED

    assert await nav.open_menu()
    assert portal.screen == "years"
    assert nav.state is NavState.MENU_OPENED


async def test_identifier_is_set_by_script_when_typing_fails(make_navigator, subject):
    page = FakePage('<input type="text" id="cnpj">')
    page.fill_error = RuntimeError("element is not editable")
    page.navigates = False
    nav = make_navigator(page, subject)
    await nav.submit_identifier()
    assert page.soup.select_one("#cnpj")["value"] == "00000000000191"
    assert ("input", "change") in page.events
    # a confirm that does not navigate is tolerated
    assert nav.state is NavState.IDENTIFIER_SUBMITTED


async def test_inline_display_name_sources(make_navigator, subject):
    page = FakePage(
        '<ul class="list-inline"><li>00.000.000/0001-91</li><li>ACME</li></ul>'
        '<p><strong>Nome:</strong> ACME COMERCIO LTDA</p>'
    )
    nav = make_navigator(page, subject)
    assert await nav.read_inline_display_name() == "00.000.000/0001-91 - ACME"
    await nav.capture_inline_display_name()
    assert subject.display_name == "ACME COMERCIO LTDA"
    assert subject.display_name_source == "markup"


async def test_late_display_name_overrides_earlier_guess(make_navigator, subject):
    page = FakePage('<ul><li>Nome: ACME COMERCIO LTDA</li></ul>')
    subject.set_display_name("ACME", "inline-list")
    nav = make_navigator(page, subject)
    assert await nav.capture_display_name() == "ACME COMERCIO LTDA"
    assert subject.display_name_source == "labelled"


async def test_captcha_wait_is_bounded(make_navigator, subject):
    page = FakePage('<iframe src="https://newassets.hcaptcha.com/captcha"></iframe>')
    nav = make_navigator(page, subject, captcha_timeout_ms=50)
    assert await nav.wait_past_captcha()


async def test_missing_menu_is_not_fatal(make_navigator, subject):
    nav = make_navigator(FakePage("<p>Bem-vindo</p>"), subject)
    assert not await nav.open_menu()
    assert nav.state is NavState.MENU_OPENED


async def test_enumerate_native_select_years(make_navigator, subject, portal):
    nav = make_navigator(portal, subject)
    await nav.prepare()
    options = await nav.enumerate_years()
    assert [o.label for o in options] == ["2024", "2023", "2022 - Não optante"]
    assert [o.eligible for o in options] == [True, True, False]
    assert nav.state is NavState.YEARS_ENUMERATED


async def test_enumerate_custom_dropdown_years(make_navigator, subject):
    html = (
        '<button class="dropdown-toggle">Selecione</button>'
        '<ul class="dropdown-menu">'
        '<li><a href="#">2024</a></li>'
        '<li class="disabled"><a href="#">2021</a></li>'
        "<li><a href=\"#\">Não optante</a></li>"
        "</ul>"
    )
    nav = make_navigator(FakePage(html), subject)
    options = await nav.enumerate_years()
    by_label = {o.label: o for o in options}
    assert by_label["2024"].eligible
    assert not by_label["Não optante"].eligible
    assert by_label["2024"].handle is not None


async def test_year_cycle_with_native_select(make_navigator, subject, portal):
    nav = make_navigator(portal, subject)
    await nav.prepare()
    options = await nav.enumerate_years()

    result = await nav.run_year(options[0])
    assert portal.selected == ["2024"]
    assert ("select", "change") in portal.events
    assert len(result.records) == 3
    assert result.records[2].total == "R$ 1.070,60"
    assert nav.state is NavState.EXTRACTED


async def test_year_without_debits_gives_zero_records(make_navigator, subject, portal):
    nav = make_navigator(portal, subject)
    await nav.prepare()
    options = await nav.enumerate_years()
    result = await nav.run_year(options[1])
    assert result.label == "2023"
    assert result.records == []


async def test_unselectable_year_gives_zero_records(make_navigator, subject):
    nav = make_navigator(FakePage("<p>sem seletor</p>"), subject)
    result = await nav.run_year(YearOption(value="2024", label="2024", eligible=True))
    assert result.records == []


async def test_year_cycle_never_raises(make_navigator, subject, portal):
    nav = make_navigator(portal, subject)
    await nav.prepare()
    options = await nav.enumerate_years()
    portal.content_errors = [ValueError("renderer crashed")]
    result = await nav.run_year(options[0])
    assert result.records == []


async def test_missing_consult_action_still_extracts(make_navigator, subject):
    html = (
        '<select id="ano"><option value="2024">2024</option></select>'
        "<table><tr><td>01/2024</td><td>R$ 70,60</td></tr></table>"
    )
    nav = make_navigator(FakePage(html), subject)
    options = await nav.enumerate_years()
    assert not await nav.consult()
    result = await nav.run_year(options[0])
    assert len(result.records) == 1
    assert result.records[0].source == "loose"


def test_subject_fixture_digits(subject: Subject):
    assert subject.digits == "00000000000191"
