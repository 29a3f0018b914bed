"""Authentication module (password + face verification, bearer tokens).

Services:
    - UserDirectory: account storage.
    - TokenService: issues and verifies JWT access/refresh tokens.
    - FaceMatcher: face detection at signup, face comparison at login.
"""
