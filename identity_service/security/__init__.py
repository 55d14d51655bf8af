"""Token signing, OTP challenges and password hashing."""
