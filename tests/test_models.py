import pytest

from vmawatch.models import AlertParseError, AlertSource, parse_alert


def test_parse_full_alert(alert_payload):
    alert = parse_alert(alert_payload("inc-7", status="Exercise", geocodes=("01", "0180")))

    assert alert.incident_id == "inc-7"
    assert alert.identifier == "SRVMA-inc-7"
    assert alert.msg_type == "Alert"
    assert alert.is_exercise and not alert.is_test
    info = alert.info[0]
    assert info.language == "sv-SE"
    assert info.severity == "Severe"
    assert [a.geocode for a in info.areas] == ["01", "0180"]
    assert info.areas[0].area_desc == "Stockholms län"
    assert alert.raw["incidents"] == "inc-7"


def test_geocode_shapes_are_all_accepted():
    alert = parse_alert(
        {
            "incidents": "1",
            "msgType": "Alert",
            "status": "Actual",
            "info": [
                {
                    "area": [
                        {"geocode": "01"},
                        {"geocode": {"value": "0180"}},
                        {"geocode": ["12", {"value": "1280"}, None, ""]},
                        "not an area",
                    ]
                }
            ],
        }
    )
    assert [a.geocode for a in alert.info[0].areas] == ["01", "0180", "12", "1280"]


def test_incident_id_fallbacks():
    assert parse_alert({"incidentId": "abc"}).incident_id == "abc"
    assert parse_alert({"identifier": "SRVMA-1"}).incident_id == "SRVMA-1"


@pytest.mark.parametrize("data", [None, [], "alert", {"msgType": "Alert"}, {"incidents": "  "}])
def test_unparseable_records(data):
    with pytest.raises(AlertParseError):
        parse_alert(data)


def test_source_for_test_mode():
    assert AlertSource.for_test_mode(True) is AlertSource.TEST
    assert AlertSource.for_test_mode(False) is AlertSource.PRODUCTION
