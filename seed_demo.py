# seed_demo.py
import os

import requests

SHELF_BASE_URL = os.getenv("SHELF_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")
HEADERS = {"X-API-Key": SERVICE_API_KEY}

USERS = [
    {"id": "reader-1", "name": "Abebe Kebede", "email": "abebe@example.com", "role": "reader"},
    {"id": "reader-2", "name": "Sara Tesfaye", "email": "sara@example.com", "role": "reader"},
    {"id": "staff-1", "name": "Helen Librarian", "email": "helen@example.com", "role": "staff"},
    {"id": "admin-1", "name": "Dawit Admin", "email": "dawit@example.com", "role": "administrator"},
]

SHELVES = [1, 2, 3]

# mass in grams, measured on the shelf scale
BOOKS = [
    {"isbn": "978-0132350884", "title": "Clean Code", "author": "Robert C. Martin", "mass": 300, "shelf": 1},
    {"isbn": "978-0201616224", "title": "The Pragmatic Programmer", "author": "Andrew Hunt, David Thomas", "mass": 520, "shelf": 1},
    {"isbn": "978-0131103627", "title": "The C Programming Language", "author": "Brian W. Kernighan, Dennis M. Ritchie", "mass": 410, "shelf": 2},
    {"isbn": "978-0134685991", "title": "Effective Java", "author": "Joshua Bloch", "mass": 750, "shelf": 2},
    {"isbn": "978-0262033848", "title": "Introduction to Algorithms", "author": "Cormen, Leiserson, Rivest, Stein", "mass": 2200, "shelf": 3},
    {"isbn": "978-1491950357", "title": "Designing Data-Intensive Applications", "author": "Martin Kleppmann", "mass": 1000, "shelf": 3},
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] shelf service not reachable at {health_url}: {e}")
        return False


def post(path, payload):
    resp = requests.post(f"{SHELF_BASE_URL}{path}", headers=HEADERS, json=payload, timeout=5)
    if not resp.ok:
        print(f"      {path} -> {resp.status_code} {resp.text.strip()}")
    return resp


def seed_users():
    print("\n== Syncing users ==")
    for u in USERS:
        resp = post("/api/users", u)
        print(f"  {u['id']} ({u['role']}): {resp.status_code}")


def seed_shelves_and_books():
    print("\n== Registering shelves and books ==")
    shelf_ids = {}
    for number in SHELVES:
        on_shelf = sum(b["mass"] for b in BOOKS if b["shelf"] == number)
        resp = post("/api/shelves", {"shelf_number": number, "current_mass": on_shelf})
        if resp.ok:
            shelf_ids[number] = resp.json()["id"]
            print(f"  Shelf {number}: baseline {on_shelf}g")

    for i, book in enumerate(BOOKS, start=1):
        payload = {k: v for k, v in book.items() if k != "shelf"}
        payload["shelf_id"] = shelf_ids.get(book["shelf"])
        resp = post("/api/books", payload)
        print(f"  [{i:02}] {book['title']} ({book['mass']}g) -> {resp.status_code}")
    return shelf_ids


def main():
    print("Checking shelf service...")
    if not check_service(SHELF_BASE_URL):
        print("\nShelf service is not reachable. Make sure it is running on 5000.")
        return

    seed_users()
    seed_shelves_and_books()

    print("\nDone.")
    print("Try:")
    print(f"  curl -X POST {SHELF_BASE_URL}/api/reservations "
          "-H 'Content-Type: application/json' -d '{\"book_id\": 1, \"holder_id\": \"reader-1\"}'")
    print(f"  curl -X POST {SHELF_BASE_URL}/api/shelves/1/readings -H 'X-API-Key: {SERVICE_API_KEY}' "
          "-H 'Content-Type: application/json' -d '{\"mass\": 520}'")
    print(f"  curl {SHELF_BASE_URL}/api/users/reader-1/notifications")


if __name__ == "__main__":
    main()
