#!/usr/bin/env python
"""
Example script for calling the Fashion Trend API.

Scores a product's detected attributes against a trend reference set and
prints the demand assessment and production plan.
"""

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import httpx

API_URL = "http://localhost:8080/score"

SAMPLE_REQUEST = {
    "product_attributes": {
        "detected_color": "Butter Yellow #F8E38C",
        "detected_fabric": "Linho",
        "detected_style": "Oversized blazer",
    },
    "trend_references": {
        "colors": [
            {"name": "Butter Yellow", "identifier": "#F8E38C", "confidence": 95,
             "observed_appearances": 120, "sources": ["Instagram", "WGSN"]},
            {"name": "Burgundy", "identifier": "#800020", "confidence": 80,
             "observed_appearances": 60, "sources": ["Instagram"]},
        ],
        "fabrics": [
            {"name": "Linen", "identifier": "+35%", "observed_appearances": 90, "sources": ["Google Trends"]},
        ],
        "styles": [
            {"name": "Alfaiataria", "identifier": "alta", "observed_appearances": 45, "sources": ["TikTok"]},
        ],
    },
    "estimated_price": 189.90,
    "estimated_production_cost": 72.50,
}


async def score_product(request_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Call the API to score a product.

    Args:
        request_data: The score request payload

    Returns:
        Dict[str, Any]: The API response, or an empty dict on error
    """
    async with httpx.AsyncClient() as client:
        response = await client.post(API_URL, json=request_data, timeout=30.0)

        if response.status_code != 200:
            print(f"Error: {response.status_code}")
            print(response.text)
            return {}

        return response.json()


def display_results(results: Dict[str, Any]) -> None:
    if not results:
        return

    print("\n====== PRODUCT DEMAND ASSESSMENT ======\n")
    print(f"Demand score: {results['demand_score']}/100")
    print(f"Risk tier:    {results['risk_tier']}")
    print(f"Trend level:  {results['trend_level']}")

    print("\nSUB-SCORES:")
    for sub_score in results.get("sub_scores", []):
        print(f"- {sub_score['kind']}: {sub_score['value']:.0f} ({sub_score.get('reasoning', '')})")

    print("\nPRODUCTION PLAN:")
    print(f"- Recommended quantity: {results['recommended_quantity']} units")
    print(f"- Target audience:      {results['target_audience_size']} people "
          f"({results['conversion_rate']:.0%} conversion)")
    print(f"- Projected revenue:    {results['projected_revenue']:.2f}")
    print(f"- Production cost:      {results['total_production_cost']:.2f}")
    print(f"- Profit margin:        {results['profit_margin_pct']:.1f}%")

    print(f"\n{results.get('justification', '')}")


async def main(request_data: Optional[Dict[str, Any]] = None) -> None:
    if request_data is None:
        request_data = SAMPLE_REQUEST

    print("Calling Fashion Trend API...")
    results = await score_product(request_data)
    display_results(results)


if __name__ == "__main__":
    if len(sys.argv) > 1:
        try:
            with open(sys.argv[1], "r") as f:
                custom_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error loading JSON file: {e}")
            sys.exit(1)
        asyncio.run(main(custom_data))
    else:
        asyncio.run(main())
