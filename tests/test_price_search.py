"""Tests for the dual-source price search merger."""
import asyncio

import pytest
from conftest import USER_ID, FakeEngine, hit

from app.models.price_monitoring import CompetitorSite, PriceMonitoring
from app.models.user_alert import UserAlert
from app.services.errors import NoCompetitorSites
from app.services.price_search import (
    DualPriceSearch,
    PriceSearchResult,
    canonical_url,
    detect_promotions,
    merge_results,
    resolve_sites,
    search_stats,
)


def result(price, source="google"):
    return PriceSearchResult(product_name="Lampe", price=price, url=f"https://shop.fr/{price}", source=source, confidence_score=0.7)


def add_site(db, name="Shop", url="shop.fr", active=True, user_id=USER_ID):
    site = CompetitorSite(user_id=user_id, site_name=name, site_url=url, is_active=active)
    db.add(site)
    db.commit()
    return site


def test_canonical_url():
    assert canonical_url("https://WWW.Shop.fr/p/123/?utm_source=x&b=2&a=1#top") == "https://shop.fr/p/123?a=1&b=2"
    assert canonical_url("https://shop.fr/p/123") == canonical_url("https://www.shop.fr/p/123/?gclid=abc")
    assert canonical_url("http://shop.fr/p/123") == canonical_url("https://www.shop.fr/p/123")
    assert canonical_url(None) == ""


def test_merge_marks_dual_results():
    hits_a = [hit("https://www.shop.fr/lampe", 20.0, image_url="https://shop.fr/a.jpg")]
    hits_b = [
        hit("https://shop.fr/lampe?utm_source=x", 18.0, rating=4.5, reviews_count=12, in_stock=True),
        hit("https://other.fr/lampe", 30.0),
    ]

    merged = merge_results(hits_a, hits_b, response_time_ms=120)

    assert len(merged) == 2
    dual, single = merged
    assert dual.source == "dual"
    assert dual.confidence_score == 0.95
    assert dual.price == 18.0
    assert dual.rating == 4.5
    assert dual.reviews_count == 12
    assert dual.stock_status == "in_stock"
    assert dual.image_url == "https://shop.fr/a.jpg"
    assert set(dual.metadata) >= {"google_data", "serper_data"}
    assert single.source == "serper"
    assert single.confidence_score == 0.8


def test_merge_joins_http_and_https_hits():
    merged = merge_results([hit("http://shop.fr/lampe", 21.0)], [hit("https://www.shop.fr/lampe/", 19.0)])

    assert len(merged) == 1
    assert merged[0].source == "dual"
    assert merged[0].price == 19.0


def test_merge_ignores_non_positive_price_from_one_side():
    merged = merge_results([hit("https://shop.fr/x", 25.0)], [hit("https://shop.fr/x", 0.0)])
    assert merged[0].price == 25.0
    assert merged[0].source == "dual"


def test_merge_with_failed_backend():
    merged = merge_results(None, [hit("https://shop.fr/x", 10.0)])
    assert [r.source for r in merged] == ["serper"]
    assert merge_results(None, None) == []


def test_promotions_flag_every_minimum():
    results = detect_promotions([result(100.0), result(100.0), result(80.0), result(80.0)])

    assert [r.metadata["is_best_price"] for r in results] == [False, False, True, True]
    assert [r.metadata["is_promo"] for r in results] == [False, False, True, True]
    assert results[2].metadata["avg_price"] == 90.0


def test_minimum_is_a_promo_even_with_small_discount():
    results = detect_promotions([result(50.0), result(52.0)])
    assert results[0].metadata["is_promo"] is True
    assert results[1].metadata["is_promo"] is False


def test_zero_prices_are_never_promos():
    results = detect_promotions([result(0.0), result(40.0)])
    assert results[0].metadata["is_promo"] is False
    assert results[1].metadata["is_best_price"] is True


def test_search_stats():
    results = [result(10.0, "google"), result(12.0, "serper"), result(11.0, "dual")]
    detect_promotions(results)

    stats = search_stats(results)

    assert stats == {
        "total_results": 3,
        "google_results": 2,
        "serper_results": 2,
        "dual_validated": 1,
        "promotions_found": 1,
    }


def test_resolve_sites(db):
    with pytest.raises(NoCompetitorSites):
        resolve_sites(db, USER_ID, None)

    shop = add_site(db)
    add_site(db, "Off", "off.fr", active=False)
    foreign = add_site(db, "Foreign", "foreign.fr", user_id="someone-else")
    for i in range(6):
        add_site(db, f"Extra {i}", f"extra{i}.fr")

    assert len(resolve_sites(db, USER_ID, None)) == 5
    assert [s.id for s in resolve_sites(db, USER_ID, [shop.id, foreign.id])] == [shop.id]


def test_run_persists_results_and_alerts_once(db, engines):
    add_site(db)
    search = DualPriceSearch(engines["a"], engines["b"])

    outcome = asyncio.run(search.run(db, USER_ID, "Lampe LED"))

    assert outcome["stats"]["dual_validated"] == 1
    assert outcome["results"][0]["price"] == 18.0
    assert outcome["results"][0]["metadata"]["is_best_price"] is True
    assert engines["a"].queries == ["Lampe LED site:shop.fr"]
    assert db.query(PriceMonitoring).count() == 1
    assert db.query(PriceMonitoring).one().search_engine == "dual"
    alerts = db.query(UserAlert).filter(UserAlert.alert_type == "price_drop").all()
    assert len(alerts) == 1
    assert alerts[0].alert_data["promotion_count"] == 1


def test_run_survives_a_failing_backend(db):
    add_site(db)
    search = DualPriceSearch(
        FakeEngine("google", error=RuntimeError("quota exceeded")),
        FakeEngine("serper", [hit("https://shop.fr/a", 10.0), hit("https://shop.fr/b", 15.0)]),
    )

    outcome = asyncio.run(search.run(db, USER_ID, "Lampe LED"))

    assert [r["source"] for r in outcome["results"]] == ["serper", "serper"]
    assert db.query(PriceMonitoring).count() == 2


def test_unconfigured_backend_is_not_called(db):
    add_site(db)
    unconfigured = FakeEngine("google", [hit("https://shop.fr/a", 10.0)], configured=False)
    search = DualPriceSearch(unconfigured, FakeEngine("serper"))

    outcome = asyncio.run(search.run(db, USER_ID, "Lampe LED"))

    assert unconfigured.queries == []
    assert outcome["results"] == []
    assert db.query(UserAlert).count() == 0
