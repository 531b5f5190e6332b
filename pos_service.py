#!/usr/bin/env python3
# POS replica store: collection specs, accounts, LRD/USD rate, demo seed + CLI
import argparse
import datetime as dt
import hashlib
import hmac
import os
import secrets
import sys
from typing import Any, Dict, List, Optional

from docstore import CollectionSpec, DocumentStore, DuplicateKeyError

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")
DEFAULT_LRD_TO_USD = 197.0
PASSWORD_ROUNDS = 1000
USER_TYPES = ("admin", "employee")

# Record kind -> collection. Natural keys mirror the unique indexes of the
# store's models so both replicas reject the same duplicates.
COLLECTIONS: Dict[str, CollectionSpec] = {
    "Product": CollectionSpec(
        "products",
        required=("item", "store"),
        unique=(("item", "store"),),
    ),
    "Transaction": CollectionSpec(
        "transactions",
        required=("store", "currency"),
    ),
    "User": CollectionSpec(
        "users",
        required=("username", "password", "userType", "store"),
        unique=(("username", "store"),),
    ),
    "CurrencyRate": CollectionSpec(
        "currencyrates",
        required=("lrdToUsd",),
    ),
    "Credit": CollectionSpec(
        "credits",
        required=("customerName", "store"),
    ),
}


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def connect(db_path: str = DB_PATH, must_exist: bool = False, timeout: float = 30) -> DocumentStore:
    return DocumentStore.connect(db_path, COLLECTIONS, must_exist=must_exist, timeout=timeout)


def init_db(store: DocumentStore) -> Dict[str, Any]:
    return store.ensure_indexes()


# ---------- ACCOUNTS ----------
def _hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha512", password.encode("utf-8"), salt.encode("utf-8"),
                               PASSWORD_ROUNDS, dklen=64).hex()


def find_account(store: DocumentStore, username: Optional[str], store_name: Optional[str]) -> Optional[Dict[str, Any]]:
    """Actor directory lookup: the account for (username, store), or None."""
    username = (username or "").strip()
    store_name = (store_name or "").strip()
    if not username or not store_name:
        return None
    return store.collection(COLLECTIONS["User"].name).find_one({"username": username, "store": store_name})


def create_account(store: DocumentStore, username: str, password: str, store_name: str,
                   user_type: str = "employee") -> str:
    username = (username or "").strip()
    store_name = (store_name or "").strip()
    if not username or not store_name or not password:
        raise ValueError("username, password and store are required")
    if user_type not in USER_TYPES:
        raise ValueError(f"userType must be one of {', '.join(USER_TYPES)}")
    salt = secrets.token_hex(16)
    try:
        return store.collection(COLLECTIONS["User"].name).insert_one({
            "username": username,
            "password": _hash_password(password, salt),
            "salt": salt,
            "userType": user_type,
            "store": store_name,
            "createdAt": iso_now(),
        })
    except DuplicateKeyError as exc:
        raise ValueError(f"Account {username!r} already exists in store {store_name!r}") from exc


def verify_password(account: Optional[Dict[str, Any]], password: str) -> bool:
    if not account or not account.get("salt") or not account.get("password"):
        return False
    return hmac.compare_digest(account["password"], _hash_password(password or "", account["salt"]))


# ---------- CURRENCY RATE ----------
def get_currency_rate(store: DocumentStore) -> Dict[str, Any]:
    """Return the single LRD-per-USD rate document, creating the default one when missing."""
    rates = store.collection(COLLECTIONS["CurrencyRate"].name)
    rate = rates.find_one(sort=[("updatedAt", -1)])
    if rate:
        return rate
    now = iso_now()
    doc = {"lrdToUsd": DEFAULT_LRD_TO_USD, "createdAt": now, "updatedAt": now}
    doc["_id"] = rates.insert_one(doc)
    return doc


def set_currency_rate(store: DocumentStore, lrd_to_usd: Any) -> Dict[str, Any]:
    try:
        value = float(lrd_to_usd)
    except (TypeError, ValueError):
        raise ValueError("Invalid currency rate. Please provide a positive number.")
    if value <= 0:
        raise ValueError("Invalid currency rate. Please provide a positive number.")
    current = get_currency_rate(store)
    rates = store.collection(COLLECTIONS["CurrencyRate"].name)
    rates.update_one({"_id": current["_id"]}, {"lrdToUsd": value, "updatedAt": iso_now()})
    return rates.find_one({"_id": current["_id"]})


# ---------- DEMO & CLI ----------
def seed_demo(store: DocumentStore, store_name: str = "RMC Liberia") -> Dict[str, int]:
    """Seed a small catalog, one sale and one open credit tab for a store.

    Re-running is safe: products are upserted on (item, store).
    """
    now = iso_now()
    products = store.collection(COLLECTIONS["Product"].name)
    catalog: List[Dict[str, Any]] = [
        {"item": "Rice 25kg", "category": "Food", "priceLRD": 3940, "priceUSD": 20, "pieces": 40},
        {"item": "Palm Oil 1L", "category": "Food", "priceLRD": 591, "priceUSD": 3, "pieces": 120},
        {"item": "Bar Soap", "category": "Household", "priceLRD": 99, "priceUSD": 0.5, "pieces": 300},
    ]
    seeded = 0
    for entry in catalog:
        doc = dict(entry, store=store_name, createdAt=now)
        doc["totalLRD"] = doc["pieces"] * doc["priceLRD"]
        doc["totalUSD"] = doc["pieces"] * doc["priceUSD"]
        if products.update_one({"item": doc["item"], "store": store_name}, doc, upsert=True) == "upserted":
            seeded += 1
    rice = products.find_one({"item": "Rice 25kg", "store": store_name})
    line = {
        "product": rice["_id"],
        "productName": rice["item"],
        "quantity": 1,
        "priceAtSale": {"USD": rice["priceUSD"], "LRD": rice["priceLRD"]},
    }
    store.collection(COLLECTIONS["Transaction"].name).insert_one({
        "date": now, "type": "sale", "saleCategory": "product", "store": store_name,
        "currency": "USD", "paymentMethod": "Cash", "productsSold": [line],
        "amountReceivedUSD": 20, "amountReceivedLRD": 0, "totalUSD": 20, "totalLRD": 3940,
        "createdAt": now,
    })
    store.collection(COLLECTIONS["Credit"].name).insert_one({
        "date": now, "customerName": "Walk-in Tab", "store": store_name, "status": "pending",
        "preferredCurrency": "LRD", "productsSold": [line], "totalLRD": 3940, "totalUSD": 20,
        "createdAt": now,
    })
    get_currency_rate(store)
    return {"products": seeded, "transactions": 1, "credits": 1}


def main():
    ap = argparse.ArgumentParser(description="POS replica store tools")
    ap.add_argument("--db", default=DB_PATH, help="Path to the document store file")
    ap.add_argument("--init", action="store_true", help="Create collections and unique indexes")
    ap.add_argument("--seed", action="store_true", help="Insert demo catalog, sale and credit")
    ap.add_argument("--store", default="RMC Liberia", help="Store name for --seed / --create-account")
    ap.add_argument("--create-account", metavar="USERNAME", help="Create a local account")
    ap.add_argument("--password", help="Password for --create-account")
    ap.add_argument("--user-type", default="admin", choices=USER_TYPES)
    ap.add_argument("--set-rate", type=float, metavar="LRD_PER_USD", help="Update the LRD/USD rate")
    args = ap.parse_args()

    store = connect(args.db)
    try:
        if args.init:
            report = init_db(store)
            print("Initialized collections:", ", ".join(sorted(report)))

        if args.seed:
            counts = seed_demo(store, args.store)
            print("Seeded demo data:", counts)

        if args.create_account:
            if not args.password:
                ap.error("--password is required with --create-account")
            try:
                account_id = create_account(store, args.create_account, args.password, args.store, args.user_type)
            except ValueError as e:
                print(f"Failed to create account: {e}", file=sys.stderr)
                sys.exit(1)
            print(f"Created account {args.create_account} ({account_id}) in {args.store}")

        if args.set_rate is not None:
            try:
                rate = set_currency_rate(store, args.set_rate)
            except ValueError as e:
                print(str(e), file=sys.stderr)
                sys.exit(1)
            print(f"LRD/USD rate is now {rate['lrdToUsd']}")
    finally:
        store.close()


if __name__ == "__main__":
    main()
