"""
CAPABILITIES MODULE
===================

The tools Niblet's assistant may call while a run is in requires_action, and
the JSON schemas we register with each assistant so it knows they exist.

TOOLS:
  log_meal           - Save a meal (name, type, calories, macros, items).
  log_weight         - Save a weight entry in pounds and update the profile's current weight.
  get_nutrition_info - Look the food up on the web with Tavily and return a short digest.

Each handler takes the decoded tool arguments and returns a JSON-serialisable
dict. Handlers may raise; the tool dispatcher turns that into a failure payload
so one broken tool never stops a run.

build_handlers(...) returns the name -> handler table the dispatcher is built from.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from tavily import AsyncTavilyClient

from app.utils.retry import with_retry

logger = logging.getLogger("NIBLET")

MEAL_TYPES = [
    "Breakfast",
    "Morning Snack",
    "Lunch",
    "Afternoon Snack",
    "Dinner",
    "Evening Snack",
    "Other",
]

# ==============================================================================
# TOOL SCHEMAS (sent when an assistant is created)
# ==============================================================================

TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "log_meal",
            "description": "Log a meal with estimated calories and nutrition information",
            "parameters": {
                "type": "object",
                "properties": {
                    "meal_name": {"type": "string", "description": "The name of the meal"},
                    "meal_type": {
                        "type": "string",
                        "description": "Type of meal (breakfast, lunch, dinner, snack)",
                        "enum": MEAL_TYPES,
                    },
                    "calories": {"type": "number", "description": "Estimated calories"},
                    "protein": {"type": "number", "description": "Protein in grams"},
                    "carbs": {"type": "number", "description": "Carbohydrates in grams"},
                    "fat": {"type": "number", "description": "Fat in grams"},
                    "items": {
                        "type": "array",
                        "description": "List of food items in the meal",
                        "items": {"type": "string"},
                    },
                },
                "required": ["meal_name", "meal_type", "calories"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "log_weight",
            "description": "Log the user's weight",
            "parameters": {
                "type": "object",
                "properties": {
                    "weight": {"type": "number", "description": "The user's weight in pounds"},
                    "date": {
                        "type": "string",
                        "description": "The date of the weight measurement (YYYY-MM-DD format)",
                    },
                },
                "required": ["weight"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_nutrition_info",
            "description": "Get nutrition information for a food item or meal",
            "parameters": {
                "type": "object",
                "properties": {
                    "food_item": {"type": "string", "description": "The food item or meal to look up"},
                    "serving_size": {
                        "type": "string",
                        "description": "The serving size (e.g., '1 cup', '100g')",
                    },
                },
                "required": ["food_item"],
            },
        },
    },
]


# ==============================================================================
# HANDLERS
# ==============================================================================

class MealTrackingCapabilities:
    """
    Tool handlers bound to one user. records is a JsonRecordStore-like object,
    profiles a profile store, tavily_client an AsyncTavilyClient or None.
    """

    def __init__(self, user_id: str, records, profiles, tavily_client: Optional[AsyncTavilyClient] = None):
        self.user_id = user_id
        self.records = records
        self.profiles = profiles
        self.tavily_client = tavily_client

    async def log_meal(self, args: Dict[str, Any]) -> Dict[str, Any]:
        meal = {
            "name": args["meal_name"],
            "meal_type": args.get("meal_type") or "Other",
            "calories": args["calories"],
            "protein": args.get("protein") or 0,
            "carbs": args.get("carbs") or 0,
            "fat": args.get("fat") or 0,
            "items": args.get("items") or [],
        }
        meal_id = await self.records.add_meal(self.user_id, meal)
        logger.info("Logged meal %s (%s calories)", meal["name"], meal["calories"])
        return {
            "success": True,
            "meal_id": meal_id,
            "message": f"Logged {meal['name']} ({meal['calories']} calories)",
        }

    async def log_weight(self, args: Dict[str, Any]) -> Dict[str, Any]:
        weight = args["weight"]
        weight_id = await self.records.add_weight(self.user_id, weight, args.get("date"))
        await self.profiles.update_profile(self.user_id, {"current_weight": weight})
        logger.info("Logged weight: %s lbs", weight)
        return {
            "success": True,
            "weight_id": weight_id,
            "message": f"Logged weight: {weight} lbs",
        }

    async def get_nutrition_info(self, args: Dict[str, Any]) -> Dict[str, Any]:
        food_item = args["food_item"]
        serving_size = args.get("serving_size")
        if not self.tavily_client:
            logger.warning("Tavily client not initialized. TAVILY_API_KEY not set.")
            return {"success": False, "message": "Nutrition lookup is unavailable right now."}

        query = f"nutrition facts {food_item}"
        if serving_size:
            query += f" per {serving_size}"

        response = await with_retry(
            lambda: self.tavily_client.search(
                query=query,
                search_depth="basic",
                max_results=5,
                include_answer=True,
                include_raw_content=False,
            ),
        )
        results = response.get("results", [])
        if not results and not response.get("answer"):
            logger.warning("No Tavily search results found for query: %s", query)
            return {"success": False, "message": f"No nutrition information found for {food_item}."}

        logger.info("Tavily nutrition lookup completed for: %s (%s results)", food_item, len(results))
        return {
            "success": True,
            "food_item": food_item,
            "serving_size": serving_size,
            "summary": response.get("answer") or "",
            "sources": [
                {
                    "title": result.get("title", "No title"),
                    "content": result.get("content", ""),
                    "url": result.get("url", ""),
                }
                for result in results
            ],
        }


def build_handlers(capabilities: MealTrackingCapabilities) -> Dict[str, Callable[[Dict[str, Any]], Any]]:
    """Name -> handler table for the tool dispatcher. Names match TOOL_SCHEMAS."""
    return {
        "log_meal": capabilities.log_meal,
        "log_weight": capabilities.log_weight,
        "get_nutrition_info": capabilities.get_nutrition_info,
    }
