from .primitives import (
    SECRET_ALPHABET,
    SECRET_LENGTH,
    EncryptionError,
    b64_decode,
    b64_encode,
    encrypt_with_public_key,
    generate_secret,
    load_rsa_public_key,
    normalize_public_key_pem,
    sign_control,
    verify_control,
    )
