"""Tests for the rebalancing planner and its endpoints."""

import pytest
from datetime import date, datetime

from folio.models import AssetPrice, TransactionType
from folio.services.accounting import TransactionRecorderService
from folio.services.errors import ValidationError
from folio.services.performance_engine import AggregationResult, Lens, PerformanceSnapshot
from folio.services.rebalancing import (
    GroupTarget,
    RebalanceAction,
    calculate_rebalance_action,
    plan_rebalance,
)
from folio.services.records import AssetInfo


class TestCalculateAction:
    """50% bonds with 10% of the group in one fund: 5% implied overall."""

    def test_overweight_sells_back_to_target(self):
        calc = calculate_rebalance_action(600.0, 10000.0, target_in_group=10, group_target_pct=50)

        assert calc.implied_overall_target == pytest.approx(5.0)
        assert calc.current_in_group_pct == pytest.approx(12.0)
        assert calc.drift_pct == pytest.approx(20.0)
        assert calc.action == RebalanceAction.SELL
        assert calc.amount == pytest.approx(100.0)

    def test_underweight_buys_back_to_target(self):
        calc = calculate_rebalance_action(400.0, 10000.0, target_in_group=10, group_target_pct=50)

        assert calc.drift_pct == pytest.approx(-20.0)
        assert calc.action == RebalanceAction.BUY
        assert calc.amount == pytest.approx(100.0)

    def test_band_mode_trades_to_band_edge(self):
        sell = calculate_rebalance_action(600.0, 10000.0, 10, 50, band_mode=True)
        buy = calculate_rebalance_action(400.0, 10000.0, 10, 50, band_mode=True)

        # 10.5% and 9.5% of a 5000 group
        assert sell.amount == pytest.approx(75.0)
        assert buy.amount == pytest.approx(75.0)

    def test_inside_band_holds(self):
        calc = calculate_rebalance_action(510.0, 10000.0, 10, 50)

        assert calc.drift_pct == pytest.approx(2.0)
        assert calc.action == RebalanceAction.HOLD
        assert calc.amount == 0.0

    def test_asymmetric_thresholds(self):
        calc = calculate_rebalance_action(400.0, 10000.0, 10, 50, upside_threshold=5, downside_threshold=25)
        assert calc.action == RebalanceAction.HOLD

    def test_no_target_in_group_holds(self):
        calc = calculate_rebalance_action(600.0, 10000.0, target_in_group=0, group_target_pct=50)
        assert calc.drift_pct == 0.0
        assert calc.action == RebalanceAction.HOLD

    def test_negative_values_rejected(self):
        with pytest.raises(ValidationError):
            calculate_rebalance_action(-1.0, 10000.0, 10, 50)


def asset_lens_result(values, cash):
    per_group = [
        PerformanceSnapshot(key=asset_id, label=asset_id.upper(), current_value=value)
        for asset_id, value in values.items()
    ]
    total = PerformanceSnapshot(
        key="portfolio", label="Portfolio",
        current_value=sum(values.values()), cash_balance=cash,
    )
    return AggregationResult(lens=Lens.ASSET, as_of=date(2024, 12, 31), per_group=per_group, total=total)


ASSETS = {
    "vti": AssetInfo(asset_id="vti", ticker="VTI", sub_portfolio_id="eq"),
    "bnd": AssetInfo(asset_id="bnd", ticker="BND", sub_portfolio_id="bd"),
    "tlt": AssetInfo(asset_id="tlt", ticker="TLT", sub_portfolio_id="bd"),
    "gld": AssetInfo(asset_id="gld", ticker="GLD"),
}
GROUPS = {
    "eq": GroupTarget(key="eq", label="Equity", target_pct=60),
    "bd": GroupTarget(key="bd", label="Bonds", target_pct=40),
}
TARGETS = {("vti", "eq"): 100.0, ("bnd", "bd"): 75.0, ("tlt", "bd"): 25.0}


class TestPlan:

    def test_plan_actions_and_groups(self):
        result = asset_lens_result({"vti": 6500.0, "bnd": 2500.0, "tlt": 500.0}, cash=500.0)

        plan = plan_rebalance(result, ASSETS, GROUPS, TARGETS)

        assert plan.total_value == pytest.approx(10000.0)
        by_id = {a.asset_id: a for a in plan.assets}
        assert by_id["vti"].action == RebalanceAction.SELL
        assert by_id["vti"].amount == pytest.approx(500.0)
        assert by_id["vti"].current_pct == pytest.approx(65.0)
        assert by_id["bnd"].action == RebalanceAction.BUY
        assert by_id["bnd"].implied_overall_target == pytest.approx(30.0)
        assert by_id["tlt"].drift_pct == pytest.approx(-50.0)
        assert by_id["tlt"].amount == pytest.approx(500.0)

        assert [(g.label, g.target_pct) for g in plan.groups] == [("Bonds", 40), ("Equity", 60)]
        assert plan.groups[0].drift_pct == pytest.approx(-10.0)
        assert plan.groups[1].drift_pct == pytest.approx(5.0)

    def test_sell_proceeds_fund_most_underweight_buy_first(self):
        result = asset_lens_result({"vti": 6500.0, "bnd": 2500.0, "tlt": 500.0}, cash=500.0)

        plan = plan_rebalance(result, ASSETS, GROUPS, TARGETS)

        by_id = {a.asset_id: a for a in plan.assets}
        assert [(f.from_ticker, f.amount) for f in by_id["tlt"].funded_by] == [("VTI", 500.0)]
        assert by_id["bnd"].funded_by == []

    def test_asset_without_sub_portfolio_is_unassigned(self):
        result = asset_lens_result({"vti": 6000.0, "gld": 1000.0}, cash=0.0)

        plan = plan_rebalance(result, ASSETS, GROUPS, TARGETS)

        gld = next(a for a in plan.assets if a.asset_id == "gld")
        assert gld.sub_portfolio_label == "Unassigned"
        assert gld.action == RebalanceAction.HOLD

    def test_sold_out_asset_without_target_is_skipped(self):
        result = asset_lens_result({"vti": 6000.0, "gld": 0.0}, cash=0.0)

        plan = plan_rebalance(result, ASSETS, GROUPS, TARGETS)

        assert [a.asset_id for a in plan.assets] == ["vti"]

    def test_requires_asset_lens(self):
        result = asset_lens_result({"vti": 6000.0}, cash=0.0)
        result.lens = Lens.ACCOUNT

        with pytest.raises(ValidationError):
            plan_rebalance(result, ASSETS, GROUPS, TARGETS)

    def test_to_dict_is_plain(self):
        result = asset_lens_result({"vti": 6500.0, "tlt": 500.0}, cash=0.0)

        data = plan_rebalance(result, ASSETS, GROUPS, TARGETS).to_dict()

        assert data["as_of"] == "2024-12-31"
        assert {a["action"] for a in data["assets"]} <= {"buy", "sell", "hold"}


@pytest.fixture
async def held_vti(test_db, sample_account, sample_asset):
    """2000 deposited, 10 VTI bought at 100 and quoted at 120."""
    recorder = TransactionRecorderService(test_db)
    await recorder.record_transaction(
        account_id=sample_account.id, type=TransactionType.DEPOSIT, date=date(2024, 1, 1), amount=2000.0,
    )
    await recorder.record_transaction(
        account_id=sample_account.id, type=TransactionType.BUY, date=date(2024, 1, 2),
        asset_id=sample_asset.id, quantity=10, price_per_unit=100.0,
    )
    test_db.add(AssetPrice(ticker="VTI", price=120.0, timestamp=datetime(2024, 3, 1, 16)))
    await test_db.commit()
    return sample_asset.id, sample_asset.sub_portfolio_id


@pytest.mark.asyncio
async def test_rebalancing_endpoint(client, held_vti):
    asset_id, sub_portfolio_id = held_vti

    response = await client.put("/api/rebalancing/sub-portfolio-target", json={
        "id": sub_portfolio_id, "target_percentage": 50,
    })
    assert response.status_code == 200
    assert response.json()["target_allocation"] == 50

    response = await client.put("/api/rebalancing/asset-target", json={
        "asset_id": asset_id, "sub_portfolio_id": sub_portfolio_id, "target_percentage": 100,
    })
    assert response.status_code == 200

    response = await client.get("/api/rebalancing", params={"as_of": "2024-03-31"})
    assert response.status_code == 200
    data = response.json()
    # 1200 held + 1000 cash; the group should hold 1100
    assert data["total_value"] == pytest.approx(2200.0)
    vti = data["assets"][0]
    assert vti["ticker"] == "VTI"
    assert vti["sub_portfolio_label"] == "Core"
    assert vti["action"] == "sell"
    assert vti["amount"] == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_wider_threshold_turns_sell_into_hold(client, held_vti):
    asset_id, sub_portfolio_id = held_vti
    await client.put("/api/rebalancing/sub-portfolio-target", json={"id": sub_portfolio_id, "target_percentage": 50})
    await client.put("/api/rebalancing/asset-target", json={
        "asset_id": asset_id, "sub_portfolio_id": sub_portfolio_id, "target_percentage": 100,
    })

    response = await client.put("/api/rebalancing/thresholds", json={
        "id": sub_portfolio_id, "upside_threshold": 10, "downside_threshold": 10, "band_mode": True,
    })
    assert response.status_code == 200
    assert response.json()["band_mode"] is True

    data = (await client.get("/api/rebalancing", params={"as_of": "2024-03-31"})).json()
    assert data["assets"][0]["action"] == "hold"


@pytest.mark.asyncio
async def test_asset_target_is_replaced_not_duplicated(client, test_db, held_vti):
    asset_id, sub_portfolio_id = held_vti
    for pct in (80, 60):
        response = await client.put("/api/rebalancing/asset-target", json={
            "asset_id": asset_id, "sub_portfolio_id": sub_portfolio_id, "target_percentage": pct,
        })
        assert response.status_code == 200

    data = (await client.get("/api/rebalancing", params={"as_of": "2024-03-31"})).json()
    assert data["assets"][0]["target_in_group"] == 60


@pytest.mark.asyncio
async def test_rebalancing_updates_rejected(client, sample_asset):
    response = await client.put("/api/rebalancing/sub-portfolio-target", json={
        "id": sample_asset.sub_portfolio_id, "target_percentage": 150,
    })
    assert response.status_code == 422

    response = await client.put("/api/rebalancing/thresholds", json={
        "id": "missing", "upside_threshold": 5, "downside_threshold": 5,
    })
    assert response.status_code == 404

    response = await client.put("/api/rebalancing/asset-target", json={
        "asset_id": "missing", "sub_portfolio_id": sample_asset.sub_portfolio_id, "target_percentage": 10,
    })
    assert response.status_code == 404
