from rollups.dimensions import extract_dimensions

def test_absent_values_use_placeholders():
    pairs = dict(extract_dimensions("pageview", None, {"path": "/pricing"}))
    assert pairs["page"] == "/pricing"
    assert pairs["country"] == "unknown"
    assert pairs["device"] == "unknown"
    assert pairs["referrer_domain"] == "not set"
    assert pairs["utm_source"] == "not set"
    assert "goal" not in pairs

def test_goal_dimension_only_for_goal_events():
    normalized = {"path": "/", "country": "DE", "utm": {"utm_source": "newsletter"}}
    pairs = dict(extract_dimensions("goal", "signup", normalized))
    assert pairs["goal"] == "signup"
    assert pairs["country"] == "DE"
    assert pairs["utm_source"] == "newsletter"

def test_identify_yields_no_dimensions():
    assert extract_dimensions("identify", None, {"path": "/"}) == []
