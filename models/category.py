from typing import Any, Dict, List, Optional

from bson import ObjectId


def lineage(parent: Optional[dict]) -> Dict[str, Any]:
    """level and path of a category placed under ``parent``"""
    if not parent:
        return {"level": 0, "path": ""}
    parent_path = parent.get("path") or ""
    return {
        "level": parent.get("level", 0) + 1,
        "path": f"{parent_path}/{parent['_id']}" if parent_path else str(parent["_id"]),
    }


def build_tree(categories: List[dict], parent_id: Any = None) -> List[dict]:
    nodes = []
    for category in categories:
        if str(category.get("parent")) == str(parent_id):
            node = dict(category)
            node["children"] = build_tree(categories, category["_id"])
            nodes.append(node)
    return nodes


def full_path(db, category: dict) -> List[str]:
    """Names from the root category down to ``category``"""
    if not category.get("path"):
        return [category["name"]]
    parent_ids = [ObjectId(p) for p in category["path"].split("/")]
    parents = db["category"].find({"_id": {"$in": parent_ids}}).sort("level", 1)
    return [p["name"] for p in parents] + [category["name"]]


def update_product_count(db, category_id: Any) -> int:
    if not category_id:
        return 0
    count = db["product"].count_documents({"category": category_id, "status": "active"})
    db["category"].update_one({"_id": category_id}, {"$set": {"product_count": count}})
    return count
