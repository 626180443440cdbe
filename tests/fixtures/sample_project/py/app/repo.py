def load_user(user_id):
    return {"id": user_id}
