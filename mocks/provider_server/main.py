from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

app = FastAPI(title="Mock Aggregation Provider", version="1.0.0")


class TransactionsOptions(BaseModel):
    account_ids: List[str] = []
    count: int = 100
    offset: int = 0


class ProviderRequest(BaseModel):
    client_id: str = ""
    secret: str = ""
    access_token: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    options: TransactionsOptions = TransactionsOptions()
    account_id: Optional[str] = None
    provider: Optional[str] = None


def _error(status: int, error_type: str, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error_type": error_type, "error_code": error_code, "error_message": message},
    )


def _seed() -> Dict[str, Dict[str, Any]]:
    """
    Access token -> item state.

    - access-good: healthy item, two accounts, five transactions
    - access-login-required: item in ITEM_LOGIN_REQUIRED
    - access-revoked: token rejected outright
    """
    today = date.today()
    transactions = [
        ("txn_payroll", "acc_checking", -2500.00, 3, False, ["Transfer", "Payroll"], "ACME Corp"),
        ("txn_grocery", "acc_checking", 82.15, 2, False, ["Shops", "Supermarkets"], "Fresh Market"),
        ("txn_coffee", "acc_checking", 4.50, 1, True, ["Food and Drink", "Coffee"], "Blue Bottle"),
        ("txn_rent", "acc_checking", 1800.00, 10, False, ["Payment", "Rent"], None),
        ("txn_card", "acc_credit", 120.00, 5, False, ["Travel", "Airlines"], "Sky Air"),
    ]
    return {
        "access-good": {
            "item": {"item_id": "item_good", "institution_id": "ins_1"},
            "error": None,
            "accounts": [
                {
                    "account_id": "acc_checking",
                    "name": "Everyday Checking",
                    "type": "depository",
                    "subtype": "checking",
                    "mask": "0000",
                    "balances": {"current": 3200.55, "available": 3100.00, "limit": None, "iso_currency_code": "USD"},
                },
                {
                    "account_id": "acc_credit",
                    "name": "Rewards Card",
                    "type": "credit",
                    "subtype": "credit card",
                    "mask": "3333",
                    "balances": {"current": 410.00, "available": 4590.00, "limit": 5000.00, "iso_currency_code": "USD"},
                },
            ],
            "transactions": [
                {
                    "transaction_id": txn_id,
                    "account_id": account_id,
                    "amount": amount,
                    "iso_currency_code": "USD",
                    "date": (today - timedelta(days=days_ago)).isoformat(),
                    "pending": pending,
                    "category": category,
                    "merchant_name": merchant,
                    "name": merchant or category[-1],
                }
                for txn_id, account_id, amount, days_ago, pending, category, merchant in transactions
            ],
        },
        "access-login-required": {
            "item": {"item_id": "item_login", "institution_id": "ins_2"},
            "error": {
                "error_type": "ITEM_ERROR",
                "error_code": "ITEM_LOGIN_REQUIRED",
                "error_message": "the login details of this item have changed",
            },
            "accounts": [],
            "transactions": [],
        },
    }


ITEMS = _seed()


def _lookup(access_token: str):
    if access_token == "access-revoked":
        return None, _error(400, "INVALID_INPUT", "INVALID_ACCESS_TOKEN", "provided access token is invalid")
    item = ITEMS.get(access_token)
    if item is None:
        return None, _error(400, "ITEM_ERROR", "ITEM_NOT_FOUND", "the requested item was not found")
    return item, None


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/item/get")
def get_item(body: ProviderRequest):
    item, error = _lookup(body.access_token)
    if error:
        return error
    return {"item": item["item"], "error": item["error"], "status": {}}


@app.post("/accounts/get")
def get_accounts(body: ProviderRequest):
    item, error = _lookup(body.access_token)
    if error:
        return error
    if item["error"]:
        return _error(400, item["error"]["error_type"], item["error"]["error_code"], item["error"]["error_message"])
    return {"item": item["item"], "accounts": item["accounts"]}


@app.post("/transactions/get")
def get_transactions(body: ProviderRequest):
    item, error = _lookup(body.access_token)
    if error:
        return error
    if item["error"]:
        return _error(400, item["error"]["error_type"], item["error"]["error_code"], item["error"]["error_message"])

    matching = [
        t
        for t in item["transactions"]
        if (not body.options.account_ids or t["account_id"] in body.options.account_ids)
        and (body.start_date is None or date.fromisoformat(t["date"]) >= body.start_date)
        and (body.end_date is None or date.fromisoformat(t["date"]) <= body.end_date)
    ]
    page = matching[body.options.offset : body.options.offset + body.options.count]
    return {
        "accounts": item["accounts"],
        "transactions": page,
        "total_transactions": len(matching),
        "item": item["item"],
    }


@app.post("/item/remove")
def remove_item(body: ProviderRequest):
    item, error = _lookup(body.access_token)
    if error:
        return error
    ITEMS.pop(body.access_token, None)
    return {"removed": True}
