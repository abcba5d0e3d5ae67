from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# 在 create_app() 裡才 init_app,blueprint 可以先 import limiter 掛 decorator
bcrypt = Bcrypt()
cors = CORS()
limiter = Limiter(key_func=get_remote_address)
