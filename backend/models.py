import datetime
import logging
import certifi
from bson.objectid import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from config import Config

log = logging.getLogger(__name__)

_db = None

# the sealed private key and the accepted ballot ids never leave through these reads
PUBLIC_PROJECTION = {"private_key_enc": 0, "accepted_ballots": 0}


def _connect():
    kwargs = {"tz_aware": True}
    if Config.MONGO_TLS:
        kwargs.update(tls=True, tlsCAFile=certifi.where())
    client = MongoClient(Config.MONGO_URI, **kwargs)
    return client[Config.MONGO_DB_NAME]


def init_db(database=None):
    """Bind the module to a database (tests pass a mongomock one) and create indexes."""
    global _db
    _db = database if database is not None else _connect()
    _db.elections.create_index([("creator_address", ASCENDING)])
    # one ballot per voter per election
    _db.ballots.create_index([("election_id", ASCENDING), ("voter_address", ASCENDING)], unique=True)
    _db.ballots.create_index([("election_id", ASCENDING), ("submitted_at", ASCENDING)])
    return _db


def get_db():
    if _db is None:
        init_db()
    return _db


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def to_object_id(value):
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


# ---------------------------
# Elections
# ---------------------------
def insert_election(doc: dict) -> ObjectId:
    return get_db().elections.insert_one(doc).inserted_id


def find_election(election_id):
    oid = to_object_id(election_id)
    if oid is None:
        return None
    return get_db().elections.find_one({"_id": oid}, PUBLIC_PROJECTION)


def list_elections(creator_address=None):
    query = {"creator_address": creator_address} if creator_address else {}
    return list(get_db().elections.find(query, PUBLIC_PROJECTION).sort("created_at", -1))


def load_election_secret(election_id) -> str:
    """Sealed private key for the close/tally path only."""
    oid = to_object_id(election_id)
    doc = get_db().elections.find_one({"_id": oid}, {"private_key_enc": 1})
    if not doc or not doc.get("private_key_enc"):
        raise LookupError(f"no key material for election {election_id}")
    return doc["private_key_enc"]


def update_election(election_id, updates: dict, extra_filter: dict = None):
    """Apply $set updates; returns the new public document or None when the filter missed."""
    query = {"_id": to_object_id(election_id)}
    if extra_filter:
        query.update(extra_filter)
    return get_db().elections.find_one_and_update(
        query, {"$set": updates}, projection=PUBLIC_PROJECTION, return_document=ReturnDocument.AFTER
    )


def close_election(election_id, result_doc: dict) -> bool:
    # single document update: is_active and tally_result flip together
    res = get_db().elections.update_one(
        {"_id": to_object_id(election_id), "is_active": True, "tally_result": None, "closing": True},
        {"$set": {"is_active": False, "closing": False, "tally_result": result_doc}},
    )
    return res.modified_count == 1


def begin_closing(election_id):
    """Freeze ballot acceptance; returns the accepted ballot ids or None when not closable."""
    doc = get_db().elections.find_one_and_update(
        {"_id": to_object_id(election_id), "is_active": True, "tally_result": None, "closing": {"$ne": True}},
        {"$set": {"closing": True}},
        projection={"accepted_ballots": 1},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return None
    return doc.get("accepted_ballots") or []


def cancel_closing(election_id):
    get_db().elections.update_one(
        {"_id": to_object_id(election_id), "closing": True},
        {"$set": {"closing": False}},
    )


def accept_ballot(election_id, ballot_id) -> bool:
    # same document as the closing flag, so a ballot is either in the close snapshot or refused
    res = get_db().elections.update_one(
        {"_id": to_object_id(election_id), "is_active": True, "closing": {"$ne": True}},
        {"$push": {"accepted_ballots": ballot_id}},
    )
    return res.matched_count == 1


# ---------------------------
# Whitelist / ballots
# ---------------------------
def add_to_whitelist(election_id, address) -> bool:
    res = get_db().elections.update_one(
        {"_id": to_object_id(election_id), "is_active": False},
        {"$addToSet": {"whitelist": address}},
    )
    return res.matched_count == 1


def remove_from_whitelist(election_id, address) -> bool:
    res = get_db().elections.update_one(
        {"_id": to_object_id(election_id), "is_active": False},
        {"$pull": {"whitelist": address}},
    )
    return res.matched_count == 1


def has_voted(election_id, voter_address) -> bool:
    return get_db().ballots.find_one(
        {"election_id": to_object_id(election_id), "voter_address": voter_address}, {"_id": 1}
    ) is not None


def insert_ballot(doc: dict) -> ObjectId:
    return get_db().ballots.insert_one(doc).inserted_id


def delete_ballot(ballot_id):
    get_db().ballots.delete_one({"_id": ballot_id})


def list_ballots(election_id, ballot_ids=None):
    query = {"election_id": to_object_id(election_id)}
    if ballot_ids is not None:
        query["_id"] = {"$in": list(ballot_ids)}
    return list(
        get_db().ballots.find(query).sort(
            [("submitted_at", ASCENDING), ("_id", ASCENDING)]
        )
    )


def list_voters(election_id):
    return list(dict.fromkeys(b["voter_address"] for b in list_ballots(election_id)))


# Audit logger
def log_audit(action: str, actor: str, details: dict = None):
    get_db().audit_logs.insert_one({
        "action": action,
        "actor": actor,
        "details": details or {},
        "timestamp": utcnow()
    })
    log.debug("audit %s by %s: %s", action, actor, details)
