# seed_demo.py
import os

import requests

LENDING_BASE_URL = os.getenv("LENDING_BASE_URL", "http://localhost:5001")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

USERS = [
    {
        "external_id": "admin-001",
        "name": "Ada Admin",
        "email": "ada@library.example",
        "role": "ADMIN",
    },
    {
        "external_id": "lib-001",
        "name": "Lin Librarian",
        "email": "lin@library.example",
        "role": "LIBRARIAN",
    },
    {
        "external_id": "stu-001",
        "name": "Sam Student",
        "email": "sam@students.example",
        "role": "STUDENT",
    },
    {
        "external_id": "stu-002",
        "name": "Kim Student",
        "email": "kim@students.example",
        "role": "STUDENT",
    },
]

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "year": 2008,
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "publisher": "Addison-Wesley",
        "year": 1999,
    },
    {
        "isbn": "978-0131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
        "publisher": "Prentice Hall",
        "year": 1988,
    },
    {
        "isbn": "978-0134685991",
        "title": "Effective Java",
        "author": "Joshua Bloch",
        "publisher": "Addison-Wesley",
        "year": 2018,
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "publisher": "MIT Press",
        "year": 2009,
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "publisher": "O'Reilly Media",
        "year": 2017,
    },
]


def check_service(base_url=LENDING_BASE_URL):
    """Hit /api/health and return True/False."""
    health_url = f"{base_url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] lending service not reachable at {health_url}: {e}")
        return False


def seed_users(base_url=LENDING_BASE_URL, api_key=SERVICE_API_KEY):
    print("\n== Seeding users ==")
    created = {}
    for user in USERS:
        try:
            resp = requests.post(
                f"{base_url.rstrip('/')}/api/users",
                headers={"X-API-Key": api_key},
                json=user,
                timeout=5,
            )
            print(f"  {user['external_id']}: {resp.status_code}")
            if resp.ok:
                created[user["external_id"]] = resp.json()["id"]
        except requests.RequestException as e:
            print(f"  {user['external_id']}: FAILED -> {e}")
    return created


def seed_books(base_url=LENDING_BASE_URL, api_key=SERVICE_API_KEY):
    print("\n== Seeding books ==")
    seeded = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["copies"] = 2 + (i % 4)  # 2-5 copies

        try:
            resp = requests.post(
                f"{base_url.rstrip('/')}/api/books",
                headers={"X-API-Key": api_key},
                json=payload,
                timeout=5,
            )
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                seeded.append(resp.json())
            else:
                print(f"      Body: {resp.text.strip()}")
        except requests.RequestException as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return seeded


def main(base_url=LENDING_BASE_URL, api_key=SERVICE_API_KEY):
    print("Checking lending service...")
    if not check_service(base_url):
        print("\nLending service is not reachable. Make sure it is running on 5001.")
        return False

    seed_users(base_url, api_key)
    seed_books(base_url, api_key)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {base_url}/api/books")
    print(f"  {base_url}/api/inventory/summary")
    return True


if __name__ == "__main__":
    main()
