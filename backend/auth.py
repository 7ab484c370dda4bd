from flask_jwt_extended import JWTManager, create_access_token, jwt_required, get_jwt_identity
from functools import wraps
from flask import jsonify
import datetime
from models import find_election, log_audit

jwt = JWTManager()

# Wallet session: the wallet address is the identity.
# No message signing here; the address is taken as given.
def create_wallet_jwt(wallet_address: str, expires_seconds=3600):
    claims = {"login": "wallet"}
    expires = datetime.timedelta(seconds=expires_seconds)
    return create_access_token(identity=wallet_address, additional_claims=claims, expires_delta=expires)


# only the wallet that created the election may manage it
# the loaded election is passed to the view as `election`
def creator_required(fn):
    @wraps(fn)
    @jwt_required()
    def wrapper(election_id, *args, **kwargs):
        address = get_jwt_identity()
        election = find_election(election_id)
        if not election:
            return jsonify({"msg": "election not found"}), 404
        if election.get("creator_address") != address:
            log_audit("unauthorized_access_attempt", address or "unknown",
                      {"election_id": election_id, "endpoint": fn.__name__})
            return jsonify({"msg": "Forbidden: only the election creator can do this"}), 403
        return fn(election_id, *args, election=election, **kwargs)
    return wrapper



@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    return jsonify({"msg": "token_expired", "description": "Your session has expired. Please connect your wallet again."}), 401

@jwt.invalid_token_loader
def invalid_token_callback(error_string):
    return jsonify({"msg": "invalid_token", "description": error_string}), 401

@jwt.unauthorized_loader
def missing_token_callback(error_string):
    return jsonify({"msg": "missing_token", "description": error_string}), 401
