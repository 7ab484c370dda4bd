import base64
import logging
from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from pymongo.errors import DuplicateKeyError
from flask_jwt_extended import jwt_required, get_jwt_identity
from config import Config
from auth import jwt, create_wallet_jwt, creator_required
from models import (
    insert_election, find_election, list_elections, load_election_secret, update_election,
    close_election, begin_closing, cancel_closing, accept_ballot, add_to_whitelist,
    remove_from_whitelist, has_voted, insert_ballot, delete_ballot,
    list_ballots, list_voters, log_audit, utcnow
)
from key_manager import generate_keypair, seal_private_key, open_private_key
from ballot_codec import EncryptedBallot, ALGORITHM_VERSION, MAX_CIPHERTEXT_LENGTH
from merkle import (
    MerkleTreeSnapshot, build_tree, get_proof, hash_leaf, proof_from_hex, proof_to_hex,
    require_valid_proof
)
from tally import Ballot, tally
from errors import DecryptionFailed, DuplicateBallot, EmptyWhitelist, EntropyFailure, InvalidProof, LeafNotFound
from validators import decode_address, is_valid_address, parse_iso_datetime, validate_election_payload

log = logging.getLogger(__name__)

app = Flask(__name__)
app.config.from_object(Config)
app.config["JWT_SECRET_KEY"] = Config.JWT_SECRET_KEY
CORS(app, origins=Config.CORS_ORIGINS)
jwt.init_app(app)


def _iso(ts):
    return ts.isoformat() if hasattr(ts, "isoformat") else ts


# public shape of an election; never carries key material or the raw whitelist
def election_view(e):
    tree = e.get("merkle_tree")
    return {
        "id": str(e["_id"]),
        "title": e.get("title"),
        "creator_address": e.get("creator_address"),
        "start_time": e.get("start_time") or "",
        "end_time": e.get("end_time") or "",
        "is_private": e.get("is_private", False),
        "is_active": e.get("is_active", False),
        "is_closed": e.get("tally_result") is not None,
        "public_key": e.get("public_key"),
        "candidates": e.get("candidates", []),
        "merkle_root": tree.get("root") if tree else None,
        "whitelist_count": len(e.get("whitelist") or []),
        "created_at": _iso(e.get("created_at")),
    }


def result_view(result_doc, include_audit=False):
    out = {
        "election_id": result_doc.get("election_id"),
        "total_votes": result_doc.get("total_votes", 0),
        "candidates": result_doc.get("candidates", []),
        "winners": result_doc.get("winners", []),
        "excluded_count": result_doc.get("excluded_count", 0),
        "closed_at": _iso(result_doc.get("closed_at")),
    }
    if include_audit:
        out["decrypted_votes"] = [
            {**v, "submitted_at": _iso(v.get("submitted_at"))} for v in result_doc.get("decrypted_votes", [])
        ]
        out["decrypted_votes_count"] = len(out["decrypted_votes"])
        out["excluded"] = result_doc.get("excluded", [])
    return out


def _voting_window_error(e):
    now = utcnow()
    start = parse_iso_datetime(e.get("start_time"))
    end = parse_iso_datetime(e.get("end_time"))
    if start and now < start:
        return "voting has not started yet"
    if end and now > end:
        return "voting has ended"
    return None


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _str_field(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


# ---------------------------
# Wallet session
# ---------------------------
@app.route("/auth/wallet", methods=["POST"])
def wallet_login():
    data = _json_body()
    if data is None:
        return jsonify({"msg": "request body must be a JSON object"}), 400
    wallet_address = _str_field(data, "wallet_address")
    if not is_valid_address(wallet_address):
        return jsonify({"msg": "invalid wallet address"}), 400
    token = create_wallet_jwt(wallet_address, Config.JWT_ACCESS_TOKEN_EXPIRES)
    log_audit("wallet_login", wallet_address)
    return jsonify({"access_token": token, "address": wallet_address}), 200


# ---------------------------
# Election management
# ---------------------------
@app.route("/elections", methods=["POST"])
@jwt_required()
def create_election():
    creator = get_jwt_identity()
    data = _json_body()
    if data is None:
        return jsonify({"msg": "request body must be a JSON object"}), 400
    clean, error = validate_election_payload(data)
    if error:
        return jsonify({"msg": error}), 400
    try:
        public_key, private_key = generate_keypair()
    except EntropyFailure as e:
        log.critical("election key generation failed: %s", e)
        log_audit("keygen_failed", creator, {"error": str(e)})
        return jsonify({"msg": "could not generate election keys"}), 500

    election = {
        **clean,
        "creator_address": creator,
        "is_active": False,
        "public_key": base64.b64encode(public_key).decode('utf-8'),
        "private_key_enc": seal_private_key(private_key, Config.KEY_PASSPHRASE.encode('utf-8')),
        "whitelist": [],
        "merkle_tree": None,
        "accepted_ballots": [],
        "tally_result": None,
        "created_at": utcnow(),
    }
    election_id = insert_election(election)
    log_audit("election_created", creator, {"election_id": str(election_id), "title": clean["title"]})
    return jsonify(election_view(find_election(election_id))), 201


@app.route("/elections", methods=["GET"])
def get_elections():
    creator_address = request.args.get("creator_address") or None
    return jsonify({"elections": [election_view(e) for e in list_elections(creator_address)]}), 200


@app.route("/elections/<election_id>", methods=["GET"])
def get_election(election_id):
    e = find_election(election_id)
    if not e:
        return jsonify({"msg": "election not found"}), 404
    return jsonify(election_view(e)), 200


@app.route("/elections/<election_id>/toggle", methods=["POST"])
@creator_required
def toggle_election(election_id, election):
    actor = get_jwt_identity()
    if election.get("tally_result") is not None:
        return jsonify({"msg": "election is closed"}), 409

    if election.get("is_active"):
        updated = update_election(election_id, {"is_active": False}, {"is_active": True, "closing": {"$ne": True}})
        if updated is None:
            return jsonify({"msg": "election state changed, retry"}), 409
        log_audit("election_deactivated", actor, {"election_id": election_id})
        return jsonify(election_view(updated)), 200

    updates = {"is_active": True}
    if election.get("is_private"):
        # fresh snapshot on every activation; the whitelist is frozen while active
        try:
            leaves = [hash_leaf(decode_address(a)) for a in election.get("whitelist") or []]
            tree = build_tree(leaves)
        except EmptyWhitelist:
            return jsonify({"msg": "private election needs a non-empty whitelist"}), 400
        except ValueError as e:
            return jsonify({"msg": "whitelist contains an invalid address", "error": str(e)}), 400
        updates["merkle_tree"] = tree.to_dict()

    updated = update_election(election_id, updates, {"is_active": False})
    if updated is None:
        return jsonify({"msg": "election state changed, retry"}), 409
    log_audit("election_activated", actor, {
        "election_id": election_id,
        "merkle_root": updates["merkle_tree"]["root"] if "merkle_tree" in updates else None,
    })
    return jsonify(election_view(updated)), 200


@app.route("/elections/<election_id>/whitelist", methods=["GET"])
@creator_required
def get_whitelist(election_id, election):
    return jsonify({"whitelist": election.get("whitelist") or []}), 200


@app.route("/elections/<election_id>/whitelist", methods=["POST"])
@creator_required
def add_whitelist_address(election_id, election):
    data = _json_body()
    if data is None:
        return jsonify({"msg": "request body must be a JSON object"}), 400
    address = _str_field(data, "address")
    if not is_valid_address(address):
        return jsonify({"msg": "invalid address"}), 400
    if not election.get("is_private"):
        return jsonify({"msg": "not a private election"}), 400
    if address in (election.get("whitelist") or []):
        return jsonify({"msg": "address already whitelisted"}), 409
    if election.get("is_active") or not add_to_whitelist(election_id, address):
        return jsonify({"msg": "whitelist can only change while the election is inactive"}), 409
    log_audit("whitelist_added", get_jwt_identity(), {"election_id": election_id, "address": address})
    return jsonify(election_view(find_election(election_id))), 200


@app.route("/elections/<election_id>/whitelist/<address>", methods=["DELETE"])
@creator_required
def remove_whitelist_address(election_id, address, election):
    if address not in (election.get("whitelist") or []):
        return jsonify({"msg": "address not whitelisted"}), 404
    if election.get("is_active") or not remove_from_whitelist(election_id, address):
        return jsonify({"msg": "whitelist can only change while the election is inactive"}), 409
    log_audit("whitelist_removed", get_jwt_identity(), {"election_id": election_id, "address": address})
    return jsonify(election_view(find_election(election_id))), 200


# ---------------------------
# Eligibility proof / vote
# ---------------------------
@app.route("/elections/<election_id>/proof", methods=["POST"])
def eligibility_proof(election_id):
    data = _json_body()
    if data is None:
        return jsonify({"msg": "request body must be a JSON object"}), 400
    address = _str_field(data, "address")
    if not is_valid_address(address):
        return jsonify({"msg": "invalid address"}), 400
    e = find_election(election_id)
    if not e:
        return jsonify({"msg": "election not found"}), 404
    if not e.get("is_private"):
        return jsonify({"msg": "not a private election"}), 400
    if not e.get("merkle_tree"):
        return jsonify({"msg": "merkle tree not generated"}), 400

    tree = MerkleTreeSnapshot.from_dict(e["merkle_tree"])
    leaf = hash_leaf(decode_address(address))
    try:
        proof = get_proof(tree, leaf)
    except LeafNotFound:
        return jsonify({"msg": "address not whitelisted"}), 403
    return jsonify({
        "merkle_root": tree.root_hex,
        "proof": proof_to_hex(proof),
        "leaf": leaf.hex(),
        "address": address,
    }), 200


@app.route("/elections/<election_id>/vote", methods=["POST"])
@jwt_required()
def cast_vote(election_id):
    voter = get_jwt_identity()
    data = _json_body()
    if data is None:
        return jsonify({"msg": "request body must be a JSON object"}), 400
    encrypted_vote = data.get("encrypted_vote")
    if not encrypted_vote:
        return jsonify({"msg": "encrypted_vote required"}), 400

    e = find_election(election_id)
    if not e or not e.get("is_active"):
        return jsonify({"msg": "election not found or not active"}), 404
    if e.get("closing"):
        return jsonify({"msg": "election is closing"}), 409
    window_error = _voting_window_error(e)
    if window_error:
        return jsonify({"msg": window_error}), 403

    try:
        encrypted = EncryptedBallot.from_dict(encrypted_vote)
    except DecryptionFailed as ex:
        return jsonify({"msg": "malformed encrypted ballot", "error": str(ex)}), 400
    if encrypted.version != ALGORITHM_VERSION:
        return jsonify({"msg": f"unsupported ballot version, expected {ALGORITHM_VERSION}"}), 400
    if len(encrypted.ciphertext) > MAX_CIPHERTEXT_LENGTH:
        return jsonify({"msg": "encrypted ballot too large"}), 400

    merkle_proof = None
    if e.get("is_private"):
        merkle_proof = data.get("merkle_proof")
        if merkle_proof is None or not e.get("merkle_tree"):
            return jsonify({"msg": "merkle proof required for private elections"}), 403
        try:
            leaf = hash_leaf(decode_address(voter))
            require_valid_proof(leaf, proof_from_hex(merkle_proof), bytes.fromhex(e["merkle_tree"]["root"]))
        except (ValueError, InvalidProof) as ex:
            log_audit("invalid_merkle_proof", voter, {"election_id": election_id, "error": str(ex)})
            return jsonify({"msg": "invalid merkle proof - not whitelisted"}), 403

    if has_voted(election_id, voter):
        return jsonify({"msg": "you have already voted in this election"}), 409

    ballot_doc = {
        "election_id": e["_id"],
        "voter_address": voter,
        "encrypted_vote": encrypted.to_dict(),
        "ciphertext_sha256": encrypted.ciphertext_digest(),
        "merkle_proof": merkle_proof,
        "submitted_at": utcnow(),
    }
    try:
        ballot_id = insert_ballot(ballot_doc)
    except DuplicateKeyError:
        return jsonify({"msg": "you have already voted in this election"}), 409
    if not accept_ballot(election_id, ballot_id):
        # close froze the ballot set between the checks above and the insert
        delete_ballot(ballot_id)
        log_audit("vote_refused_closing", voter, {"election_id": election_id})
        return jsonify({"msg": "election closed before the vote was recorded"}), 409
    log_audit("vote_cast", voter, {"election_id": election_id, "ballot_id": str(ballot_id)})
    return jsonify({
        "msg": "vote recorded",
        "ballot_id": str(ballot_id),
        "receipt": ballot_doc["ciphertext_sha256"],
    }), 201


@app.route("/elections/<election_id>/voters", methods=["GET"])
def get_voters(election_id):
    if not find_election(election_id):
        return jsonify({"msg": "election not found"}), 404
    return jsonify({"voters": list_voters(election_id)}), 200


# ---------------------------
# Close / results
# ---------------------------
@app.route("/elections/<election_id>/close", methods=["POST"])
@creator_required
def close(election_id, election):
    actor = get_jwt_identity()
    if election.get("tally_result") is not None:
        return jsonify({"msg": "election already closed"}), 409
    if not election.get("is_active"):
        return jsonify({"msg": "active election not found"}), 404

    # no ballot is accepted after this point; the tally covers exactly this set
    ballot_ids = begin_closing(election_id)
    if ballot_ids is None:
        return jsonify({"msg": "election is already closing or closed"}), 409

    try:
        private_key = open_private_key(load_election_secret(election_id), Config.KEY_PASSPHRASE.encode('utf-8'))
        ballots = [
            Ballot(
                voter_address=b["voter_address"],
                encrypted=b["encrypted_vote"],
                submitted_at=b.get("submitted_at"),
                merkle_proof=b.get("merkle_proof"),
                election_id=election_id,
            )
            for b in list_ballots(election_id, ballot_ids)
        ]
        result = tally(ballots, private_key, election.get("candidates", []),
                       election_id=election_id, workers=Config.TALLY_WORKERS)
    except DuplicateBallot as ex:
        cancel_closing(election_id)
        log_audit("tally_rejected", actor, {"election_id": election_id, "duplicate_voters": ex.voters})
        return jsonify({"msg": "ballot set has duplicate voters", "voters": ex.voters}), 409
    except Exception:
        cancel_closing(election_id)
        raise

    if not close_election(election_id, result.to_document()):
        cancel_closing(election_id)
        return jsonify({"msg": "election already closed"}), 409
    for item in result.excluded:
        log_audit("ballot_excluded", "system", {"election_id": election_id, **item})
    log_audit("election_closed", actor, {
        "election_id": election_id,
        "total_votes": result.total_valid,
        "excluded_count": result.excluded_count,
        "winners": result.winners,
    })
    return jsonify({
        "success": True,
        "msg": "election closed and results calculated",
        "results": {**result.public_view(), "decrypted_votes_count": len(result.audit_log)},
    }), 200


@app.route("/elections/<election_id>/results", methods=["GET"])
def get_results(election_id):
    e = find_election(election_id)
    if not e:
        return jsonify({"msg": "election not found"}), 404
    if e.get("tally_result") is None:
        return jsonify({"msg": "results not available until the election is closed"}), 404
    return jsonify(result_view(e["tally_result"])), 200


@app.route("/elections/<election_id>/audit", methods=["GET"])
@creator_required
def get_audit(election_id, election):
    if election.get("tally_result") is None:
        return jsonify({"msg": "results not available until the election is closed"}), 404
    return jsonify(result_view(election["tally_result"], include_audit=True)), 200


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return e
    log.exception("unhandled error on %s %s", request.method, request.path)
    return jsonify({"msg": "internal error"}), 500


if __name__ == "__main__":
    logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="0.0.0.0", port=5000, debug=False)
